from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Request-fatal failure rendered as ``{"error": category, "message": ...}``."""

    category = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, category: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if category:
            self.category = category
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.category, "message": self.message}


class ConsentMissing(ServiceError):
    category = "consent_missing"
    status_code = 400


class ImageRejected(ServiceError):
    category = "image_rejected"
    status_code = 400


class AnalysisFailure(ServiceError):
    category = "analysis_failed"
    status_code = 502


class MatchingFailure(ServiceError):
    category = "matching_failed"
    status_code = 500

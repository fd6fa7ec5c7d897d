from __future__ import annotations

import os

from fastapi import APIRouter, Request

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        # Railway
        "RAILWAY_GIT_COMMIT_SHA",
        # Common CI providers
        "GITHUB_SHA",
        # Generic fallbacks
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz(request: Request):
    return {
        "ok": True,
        "service": "skin-reco-service",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "catalog_backend": request.app.state.catalog.backend_kind,
        "record_store_backend": request.app.state.records.backend_kind,
    }

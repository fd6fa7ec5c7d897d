from __future__ import annotations

import os
from typing import Any

from fastapi import Request

from skinreco.services.recommendations import DEFAULT_MAX_CONCURRENCY, RecommendationAssembler
from skinreco.store.records import RecordStore

RECO_MAX_CONCURRENCY = int(os.getenv("RECO_MAX_CONCURRENCY") or str(DEFAULT_MAX_CONCURRENCY))


def get_catalog(request: Request) -> Any:
    return request.app.state.catalog


def get_records(request: Request) -> RecordStore:
    return request.app.state.records


def get_assembler(request: Request) -> RecommendationAssembler:
    catalog = request.app.state.catalog
    return RecommendationAssembler(
        catalog.products,
        catalog.evidence,
        request.app.state.summarize,
        max_concurrency=RECO_MAX_CONCURRENCY,
    )

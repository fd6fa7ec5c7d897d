from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skinreco.errors import ServiceError
from skinreco.routes.admin import router as admin_router
from skinreco.routes.health import router as health_router
from skinreco.routes.v1 import router as v1_router
from skinreco.services.llm import generate_summary
from skinreco.services.recommendations import SummarizeFn
from skinreco.store.catalog import InMemoryCatalog
from skinreco.store.records import PersistentRecordStore
from skinreco.store.seed import seed_catalog

logger = logging.getLogger("skinreco.main")


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y"}


def _build_catalog() -> Any:
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if database_url:
        from skinreco.store.catalog_postgres import PostgresCatalog

        return PostgresCatalog(database_url=database_url)
    return InMemoryCatalog()


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
        logger.warning("request_failed path=%s category=%s message=%s", request.url.path, exc.category, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = {"error": "http_error", "message": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        message = f"{where}: {first.get('msg')}" if where else "Invalid request"
        return JSONResponse(status_code=422, content={"error": "invalid_request", "message": message})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Unexpected server error"})


def create_app(
    *,
    catalog: Any = None,
    records: Optional[PersistentRecordStore] = None,
    summarize: Optional[SummarizeFn] = generate_summary,
    seed_demo_catalog: Optional[bool] = None,
) -> FastAPI:
    _setup_logging()

    if catalog is None:
        catalog = _build_catalog()
        if seed_demo_catalog is None:
            seed_demo_catalog = _env_flag("SEED_CATALOG", catalog.backend_kind == "memory")
    records = records or PersistentRecordStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await catalog.initialize()
        if seed_demo_catalog:
            await seed_catalog(catalog)
        await records.initialize()
        try:
            yield
        finally:
            await records.close()
            await catalog.close()

    app = FastAPI(title="Skin Reco Service", version="0.1.0", lifespan=lifespan)
    app.state.catalog = catalog
    app.state.records = records
    app.state.summarize = summarize

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400,
    )

    _install_error_handlers(app)
    app.include_router(health_router)
    app.include_router(v1_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1/admin")

    return app


app = create_app()

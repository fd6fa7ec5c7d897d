from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from skinreco.deps import get_catalog
from skinreco.models import EvidenceCreate, EvidenceUpdate, LinkRequest, ProductCreate, ProductUpdate

router = APIRouter()

logger = logging.getLogger("skinreco.admin")


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"error": "not_found", "message": f"{what} not found"})


def _dump(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", exclude_none=True)


def _invalid(exc: ValidationError) -> HTTPException:
    first = exc.errors()[0] if exc.error_count() else {}
    where = ".".join(str(p) for p in first.get("loc", ()))
    message = f"{where}: {first.get('msg')}" if where else "Invalid update"
    return HTTPException(status_code=422, detail={"error": "invalid_request", "message": message})


@router.get("/products")
async def list_products(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    catalog: Any = Depends(get_catalog),
):
    products = await catalog.products.find_all(limit, offset)
    return {"products": [_dump(p) for p in products]}


@router.get("/products/{product_id}")
async def get_product(product_id: str, catalog: Any = Depends(get_catalog)):
    product = await catalog.products.find_by_id(product_id)
    if product is None:
        raise _not_found("Product")
    evidence = await catalog.evidence.find_by_product_id(product_id)
    return {"product": _dump(product), "evidence": [_dump(e) for e in evidence]}


@router.post("/products", status_code=201)
async def create_product(body: ProductCreate, catalog: Any = Depends(get_catalog)):
    product = await catalog.products.create(body)
    logger.info("product_created product_id=%s", product.product_id)
    return {"product": _dump(product)}


@router.put("/products/{product_id}")
async def update_product(product_id: str, body: ProductUpdate, catalog: Any = Depends(get_catalog)):
    try:
        product = await catalog.products.update(product_id, body)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    if product is None:
        raise _not_found("Product")
    return {"product": _dump(product)}


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, catalog: Any = Depends(get_catalog)):
    if not await catalog.products.delete(product_id):
        raise _not_found("Product")
    logger.info("product_deleted product_id=%s", product_id)
    return {"message": "Product deleted successfully"}


@router.get("/evidence")
async def list_evidence(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    catalog: Any = Depends(get_catalog),
):
    evidence = await catalog.evidence.find_all(limit, offset)
    return {"evidence": [_dump(e) for e in evidence]}


@router.get("/evidence/{evidence_id}")
async def get_evidence(evidence_id: str, catalog: Any = Depends(get_catalog)):
    evidence = await catalog.evidence.find_by_id(evidence_id)
    if evidence is None:
        raise _not_found("Evidence")
    return {"evidence": _dump(evidence)}


@router.post("/evidence", status_code=201)
async def create_evidence(body: EvidenceCreate, catalog: Any = Depends(get_catalog)):
    evidence = await catalog.evidence.create(body)
    logger.info("evidence_created evidence_id=%s", evidence.evidence_id)
    return {"evidence": _dump(evidence)}


@router.put("/evidence/{evidence_id}")
async def update_evidence(evidence_id: str, body: EvidenceUpdate, catalog: Any = Depends(get_catalog)):
    try:
        evidence = await catalog.evidence.update(evidence_id, body)
    except ValidationError as exc:
        raise _invalid(exc) from exc
    if evidence is None:
        raise _not_found("Evidence")
    return {"evidence": _dump(evidence)}


@router.delete("/evidence/{evidence_id}")
async def delete_evidence(evidence_id: str, catalog: Any = Depends(get_catalog)):
    if not await catalog.evidence.delete(evidence_id):
        raise _not_found("Evidence")
    logger.info("evidence_deleted evidence_id=%s", evidence_id)
    return {"message": "Evidence deleted successfully"}


@router.post("/link-product-evidence")
async def link_product_evidence(body: LinkRequest, catalog: Any = Depends(get_catalog)):
    if await catalog.products.find_by_id(body.product_id) is None:
        raise _not_found("Product")
    if await catalog.evidence.find_by_id(body.evidence_id) is None:
        raise _not_found("Evidence")
    await catalog.evidence.link_product_to_evidence(body.product_id, body.evidence_id)
    return {"message": "Product linked to evidence successfully"}


@router.delete("/unlink-product-evidence")
async def unlink_product_evidence(body: LinkRequest = Body(...), catalog: Any = Depends(get_catalog)):
    await catalog.evidence.unlink_product_from_evidence(body.product_id, body.evidence_id)
    return {"message": "Product unlinked from evidence successfully"}

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import logging
import os
import urllib.parse
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import RedirectResponse

from skinreco.deps import get_assembler, get_catalog, get_records
from skinreco.errors import ConsentMissing, ImageRejected
from skinreco.models import AffiliateClick, AnalysisRecord, ConsentRecord
from skinreco.services.llm import analyze_image
from skinreco.services.recommendations import RecommendationAssembler
from skinreco.store.records import HISTORY_LIMIT, RecordStore

router = APIRouter()

logger = logging.getLogger("skinreco.v1")

MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE") or "10485760")
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
ALLOWED_IMAGE_EXTENSIONS = {".jpeg", ".jpg", ".png", ".webp"}
UPLOAD_CHUNK_SIZE = 64 * 1024

CONSENT_TEXT = "I consent to uploading my image for cosmetic skin analysis. I understand this is not medical advice."
CONSENT_VERSION = "1.0"

DEFAULT_UTM = {
    "utm_source": "skincare_app",
    "utm_medium": "recommendation",
    "utm_campaign": "skin_analysis",
}


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def _image_missing() -> ImageRejected:
    return ImageRejected("Please upload an image file", category="image_missing", status_code=400)


def _validate_upload(upload: Optional[UploadFile]) -> str:
    if upload is None:
        raise _image_missing()

    content_type = (upload.content_type or "").strip().lower()
    ext = os.path.splitext(upload.filename or "")[1].lower()
    if content_type not in ALLOWED_IMAGE_TYPES or (ext and ext not in ALLOWED_IMAGE_EXTENSIONS):
        raise ImageRejected(
            "Only image files (jpeg, jpg, png, webp) are allowed",
            category="unsupported_image",
            status_code=415,
        )

    return "image/jpeg" if content_type == "image/jpg" else content_type


async def _read_upload(upload: UploadFile, limit: int) -> bytes:
    """Read the upload in chunks, stopping as soon as it passes ``limit`` bytes."""
    chunks: list[bytes] = []
    size = 0
    while True:
        chunk = await upload.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise ImageRejected(
                f"Image exceeds the {limit} byte limit",
                category="image_too_large",
                status_code=413,
            )
        chunks.append(chunk)
    if not size:
        raise _image_missing()
    return b"".join(chunks)


def _with_utm(url: str, params: dict[str, str]) -> str:
    parts = urllib.parse.urlsplit(url)
    query = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


@router.post("/analyze")
async def analyze(
    request: Request,
    image: Optional[UploadFile] = File(default=None),
    consent_given: Optional[bool] = Form(default=None),
    user_id: Optional[str] = Form(default=None),
    lighting_condition: Optional[str] = Form(default=None),
    makeup_removed: Optional[bool] = Form(default=None),
    assembler: RecommendationAssembler = Depends(get_assembler),
    records: RecordStore = Depends(get_records),
):
    if consent_given is not True:
        raise ConsentMissing("User must consent to image processing before analysis can proceed")

    content_type = _validate_upload(image)
    blob = await _read_upload(image, MAX_FILE_SIZE)

    logger.info("analysis_started bytes=%s content_type=%s", len(blob), content_type)
    analysis = await analyze_image(blob, content_type=content_type)
    result = await assembler.build_final_result(analysis)

    user_id = (user_id or "").strip() or None
    now = datetime.now(timezone.utc)
    await records.save_analysis(
        AnalysisRecord(
            analysis_id=result.analysis.analysis_id,
            user_id=user_id,
            skin_tone=analysis.skin_tone,
            overall_assessment=analysis.overall_assessment,
            detected_issues=analysis.detected_issues,
            consent_given=True,
            image_sha256=hashlib.sha256(blob).hexdigest(),
            image_bytes=len(blob),
            lighting_condition=lighting_condition,
            makeup_removed=makeup_removed,
            created_at=now,
        )
    )
    if user_id:
        await records.save_consent(
            ConsentRecord(
                user_id=user_id,
                consent_text=CONSENT_TEXT,
                consent_version=CONSENT_VERSION,
                ip_address=_client_ip(request),
                created_at=now,
            )
        )

    logger.info(
        "analysis_completed analysis_id=%s issues=%s recommendations=%s",
        result.analysis.analysis_id,
        len(result.issues),
        sum(len(i.recommendations) for i in result.issues),
    )
    return result.model_dump(mode="json", exclude_none=True)


@router.get("/analysis/history")
async def analysis_history(
    user_id: Optional[str] = Query(default=None),
    records: RecordStore = Depends(get_records),
):
    if not user_id:
        raise HTTPException(
            status_code=400,
            detail={"error": "user_id_missing", "message": "user_id query parameter is required"},
        )

    rows = await records.list_analyses(user_id, limit=HISTORY_LIMIT)
    return {
        "analyses": [
            {
                "analysis_id": r.analysis_id,
                "skin_tone": r.skin_tone,
                "overall_assessment": r.overall_assessment,
                "issues_count": len(r.detected_issues),
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]
    }


@router.get("/analysis/{analysis_id}")
async def analysis_by_id(analysis_id: str, records: RecordStore = Depends(get_records)):
    record = await records.get_analysis(analysis_id)
    if record is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Analysis not found"})

    return {
        "analysis_id": record.analysis_id,
        "skin_tone": record.skin_tone,
        "overall_assessment": record.overall_assessment,
        "detected_issues": [i.model_dump(mode="json", exclude_none=True) for i in record.detected_issues],
        "created_at": record.created_at.isoformat(),
    }


@router.get("/affiliate/stats")
async def affiliate_stats(
    product_id: Optional[str] = Query(default=None, alias="productId"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    records: RecordStore = Depends(get_records),
    catalog: Any = Depends(get_catalog),
):
    stats = await records.click_stats(product_id, start=start_date, end=end_date)
    for row in stats:
        product = await catalog.products.find_by_id(row["product_id"])
        row["product_name"] = product.name if product else None

    # Catalog products without clicks in the window are reported with zero counts.
    seen = {row["product_id"] for row in stats}
    if product_id:
        product = await catalog.products.find_by_id(product_id)
        unclicked = [product] if product is not None and product_id not in seen else []
    else:
        unclicked = [p for p in await _all_products(catalog) if p.product_id not in seen]
    stats.extend(
        {
            "product_id": p.product_id,
            "product_name": p.name,
            "total_clicks": 0,
            "unique_users": 0,
            "unique_analyses": 0,
        }
        for p in unclicked
    )
    return {"stats": stats}


async def _all_products(catalog: Any, page_size: int = 500) -> list[Any]:
    products: list[Any] = []
    offset = 0
    while True:
        page = await catalog.products.find_all(page_size, offset)
        products.extend(page)
        if len(page) < page_size:
            return products
        offset += page_size


@router.get("/affiliate/{product_id}")
async def affiliate_redirect(
    product_id: str,
    request: Request,
    analysis_id: Optional[str] = Query(default=None, alias="analysisId"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    utm_source: Optional[str] = Query(default=None, alias="utmSource"),
    utm_medium: Optional[str] = Query(default=None, alias="utmMedium"),
    utm_campaign: Optional[str] = Query(default=None, alias="utmCampaign"),
    records: RecordStore = Depends(get_records),
    catalog: Any = Depends(get_catalog),
):
    product = await catalog.products.find_by_id(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Product not found"})

    utm = {
        "utm_source": utm_source or DEFAULT_UTM["utm_source"],
        "utm_medium": utm_medium or DEFAULT_UTM["utm_medium"],
        "utm_campaign": utm_campaign or DEFAULT_UTM["utm_campaign"],
    }
    await records.record_click(
        AffiliateClick(
            click_id=str(uuid.uuid4()),
            product_id=product.product_id,
            analysis_id=analysis_id,
            user_id=user_id,
            referrer=request.headers.get("referer"),
            clicked_at=datetime.now(timezone.utc),
            **utm,
        )
    )
    return RedirectResponse(_with_utm(product.affiliate_url, utm), status_code=307)

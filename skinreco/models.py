from __future__ import annotations

from datetime import datetime
import uuid
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, AnyHttpUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

Severity = Literal["mild", "moderate", "severe"]
StrengthLabel = Literal["strong", "moderate", "preliminary"]

STRENGTH_RANK: dict[str, int] = {"strong": 1, "moderate": 2, "preliminary": 3}

_HTTP_URL = TypeAdapter(AnyHttpUrl)


def _http_url(value: str) -> str:
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError:
        raise ValueError("must be an absolute http(s) URL") from None
    return value


# Validated as AnyHttpUrl, stored as given.
HttpUrlStr = Annotated[str, AfterValidator(_http_url)]


def _reject_explicit_nulls(model: BaseModel, required: tuple[str, ...]) -> None:
    nulled = [name for name in required if name in model.model_fields_set and getattr(model, name) is None]
    if nulled:
        raise ValueError(f"fields cannot be null: {', '.join(nulled)}")


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class SkinIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue_id: str
    issue_name: str
    confidence: float = Field(ge=0, le=1)
    severity: Severity
    description: str
    affected_areas: list[str]
    bounding_boxes: Optional[list[BoundingBox]] = None
    tags: list[str] = Field(default_factory=list)


class AnalysisResponse(BaseModel):
    """Vision analyzer output after schema validation."""

    analysis_id: uuid.UUID
    timestamp: datetime
    skin_tone: Optional[str] = None
    overall_assessment: str
    detected_issues: list[SkinIssue]
    heatmap_url: Optional[str] = None
    recommendations_summary: Optional[str] = None


class ProductCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    brand: str
    affiliate_url: HttpUrlStr
    price: Optional[float] = None
    image_url: Optional[HttpUrlStr] = None
    inci: list[str] = Field(default_factory=list)
    key_actives: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    description: Optional[str] = None


class Product(ProductCreate):
    product_id: str


class ProductUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    brand: Optional[str] = None
    affiliate_url: Optional[HttpUrlStr] = None
    price: Optional[float] = None
    image_url: Optional[HttpUrlStr] = None
    inci: Optional[list[str]] = None
    key_actives: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "ProductUpdate":
        _reject_explicit_nulls(self, ("name", "brand", "affiliate_url", "inci", "key_actives", "tags"))
        return self


class EvidenceCreate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    active_ingredient: str
    paper_title: str
    source: str
    year: int
    short_summary: str
    strength_label: StrengthLabel
    pubmed_url: Optional[HttpUrlStr] = None


class Evidence(EvidenceCreate):
    evidence_id: str


class EvidenceUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    active_ingredient: Optional[str] = None
    paper_title: Optional[str] = None
    source: Optional[str] = None
    year: Optional[int] = None
    short_summary: Optional[str] = None
    strength_label: Optional[StrengthLabel] = None
    pubmed_url: Optional[HttpUrlStr] = None

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "EvidenceUpdate":
        _reject_explicit_nulls(
            self, ("active_ingredient", "paper_title", "source", "year", "short_summary", "strength_label")
        )
        return self


class ProductRecommendation(BaseModel):
    product: Product
    evidence: list[Evidence] = Field(default_factory=list, max_length=3)
    llm_generated_summary: Optional[str] = None
    # Reserved; nothing computes it yet.
    relevance_score: Optional[float] = Field(default=None, ge=0, le=1)


class IssueRecommendation(BaseModel):
    issue: SkinIssue
    recommendations: list[ProductRecommendation] = Field(default_factory=list, max_length=4)


class AnalysisSummary(BaseModel):
    analysis_id: str
    timestamp: str
    skin_tone: Optional[str] = None
    overall_assessment: str


class FinalResult(BaseModel):
    analysis: AnalysisSummary
    issues: list[IssueRecommendation]


class AnalysisRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    analysis_id: str
    user_id: Optional[str] = None
    skin_tone: Optional[str] = None
    overall_assessment: str
    detected_issues: list[SkinIssue] = Field(default_factory=list)
    consent_given: bool = True
    image_sha256: Optional[str] = None
    image_bytes: Optional[int] = None
    lighting_condition: Optional[str] = None
    makeup_removed: Optional[bool] = None
    created_at: datetime


class ConsentRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    consent_text: str
    consent_version: str
    ip_address: Optional[str] = None
    created_at: datetime


class AffiliateClick(BaseModel):
    model_config = ConfigDict(extra="ignore")

    click_id: str
    product_id: str
    analysis_id: Optional[str] = None
    user_id: Optional[str] = None
    utm_source: str
    utm_medium: str
    utm_campaign: str
    referrer: Optional[str] = None
    clicked_at: datetime


class LinkRequest(BaseModel):
    product_id: str
    evidence_id: str

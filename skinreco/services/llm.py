from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timezone
import json
import logging
import os
import re
import uuid
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from skinreco.errors import AnalysisFailure
from skinreco.models import AnalysisResponse, SkinIssue

logger = logging.getLogger("skinreco.llm")

LLM_BASE_URL = (os.getenv("LLM_BASE_URL") or "https://api.openai.com/v1").rstrip("/")
LLM_API_KEY = (os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "").strip() or None
LLM_MODEL = (os.getenv("LLM_MODEL") or "gpt-4o").strip()
SUMMARY_MODEL = (os.getenv("SUMMARY_MODEL") or "gpt-4o-mini").strip()
VISION_TIMEOUT_S = float(os.getenv("VISION_TIMEOUT_S") or "60")
SUMMARY_TIMEOUT_S = float(os.getenv("SUMMARY_TIMEOUT_S") or "20")

VALID_SEVERITIES = ("mild", "moderate", "severe")
DEFAULT_SUMMARY = "This product may help address your skin concern."

ANALYSIS_PROMPT = """You are an expert cosmetic skin analyst. Analyze the provided facial image and identify common cosmetic skin concerns.

IMPORTANT: Return ONLY valid JSON, no markdown formatting, no code blocks.

Analyze for these common issues:
- Acne & breakouts (including blackheads, whiteheads, inflammatory acne)
- Dark spots & hyperpigmentation
- Fine lines & wrinkles
- Uneven skin tone
- Redness & rosacea
- Enlarged pores
- Dryness & dehydration
- Dullness & lack of radiance
- Under-eye concerns (dark circles, puffiness)

For each detected issue, provide:
1. issue_id: unique identifier (use format: issue_<number>)
2. issue_name: specific name of the concern
3. confidence: 0.0 to 1.0 (your confidence in this detection)
4. severity: "mild", "moderate", or "severe"
5. description: brief description of what you observe
6. affected_areas: array of face areas (e.g., ["forehead", "cheeks", "nose", "chin", "around_eyes"])
7. tags: relevant tags for product matching, lowercase snake_case (e.g., ["acne", "oily_skin", "enlarged_pores"] or ["hyperpigmentation", "dark_spots", "brightening"])

Also provide:
- analysis_id: use UUID format
- timestamp: current ISO timestamp
- skin_tone: estimate (e.g., "fair", "light", "medium", "tan", "deep")
- overall_assessment: 2-3 sentence summary

Return the response in this exact JSON structure:
{
  "analysis_id": "uuid-here",
  "timestamp": "2024-01-01T00:00:00Z",
  "skin_tone": "medium",
  "overall_assessment": "Brief overall summary here",
  "detected_issues": [
    {
      "issue_id": "issue_1",
      "issue_name": "Issue Name",
      "confidence": 0.85,
      "severity": "moderate",
      "description": "Description here",
      "affected_areas": ["area1", "area2"],
      "tags": ["tag1", "tag2"]
    }
  ]
}

Be professional, non-alarmist, and focus on cosmetic concerns only. Do not provide medical diagnoses."""

SUMMARY_SYSTEM_PROMPT = "You are a skincare expert. Generate brief, evidence-focused product recommendations."

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?|\n?```\s*$", re.IGNORECASE)


async def chat_completion(
    *,
    messages: list[dict[str, Any]],
    model: str,
    timeout_s: float,
    max_tokens: int,
    temperature: float,
    base_url: str = LLM_BASE_URL,
    api_key: Optional[str] = LLM_API_KEY,
) -> str:
    url = f"{base_url.rstrip('/')}/chat/completions"
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    payload = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }

    async with httpx.AsyncClient(timeout=timeout_s) as client:
        res = await client.post(url, headers=headers, json=payload)

    if res.status_code >= 400:
        raise httpx.HTTPStatusError("LLM provider returned error", request=res.request, response=res)

    data = res.json()
    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list) or not choices:
        return ""
    message = (choices[0] or {}).get("message") or {}
    content = message.get("content")
    return content if isinstance(content, str) else ""


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", (text or "").strip()).strip()


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    if not text:
        return None

    for start in (i for i, ch in enumerate(text) if ch == "{"):
        candidate = _extract_braced(text, start)
        if not candidate:
            continue
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj

    return None


def _extract_braced(text: str, start: int) -> Optional[str]:
    depth = 0
    in_str = False
    escape = False
    end: Optional[int] = None

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = i
                break

    if end is None or depth != 0:
        return None
    return text[start : end + 1]


def parse_model_json(text: str) -> dict[str, Any]:
    cleaned = strip_code_fences(text)
    try:
        obj = json.loads(cleaned)
    except ValueError:
        obj = extract_json_object(cleaned)
    if not isinstance(obj, dict):
        raise AnalysisFailure("Analyzer response was not a JSON object")
    return obj


def _coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.5
    return min(max(float(value), 0.0), 1.0)


def _coerce_issue(raw: Any, index: int) -> dict[str, Any]:
    issue = raw if isinstance(raw, dict) else {}
    severity = issue.get("severity")
    return {
        "issue_id": issue.get("issue_id") or f"issue_{index + 1}",
        "issue_name": issue.get("issue_name") or "Unknown Issue",
        "confidence": _coerce_confidence(issue.get("confidence")),
        "severity": severity if severity in VALID_SEVERITIES else "moderate",
        "description": issue.get("description") or "No description provided",
        "affected_areas": issue["affected_areas"] if isinstance(issue.get("affected_areas"), list) else ["face"],
        "bounding_boxes": issue.get("bounding_boxes") or None,
        "tags": issue["tags"] if isinstance(issue.get("tags"), list) else [],
    }


def parse_analysis_with_fallbacks(data: Any) -> AnalysisResponse:
    """Validate analyzer output, substituting field defaults on a first failure.

    A second validation failure raises :class:`AnalysisFailure`.
    """
    try:
        return AnalysisResponse.model_validate(data)
    except ValidationError as exc:
        logger.warning("analysis_strict_validation_failed errors=%s", exc.error_count())

    raw = data if isinstance(data, dict) else {}
    raw_issues = raw.get("detected_issues")
    fallback = {
        "analysis_id": raw.get("analysis_id") or str(uuid.uuid4()),
        "timestamp": raw.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        "skin_tone": raw.get("skin_tone") or "unknown",
        "overall_assessment": raw.get("overall_assessment") or "Analysis completed",
        "detected_issues": [_coerce_issue(i, n) for n, i in enumerate(raw_issues if isinstance(raw_issues, list) else [])],
        "heatmap_url": raw.get("heatmap_url") or None,
        "recommendations_summary": raw.get("recommendations_summary") or None,
    }
    try:
        return AnalysisResponse.model_validate(fallback)
    except ValidationError as exc:
        raise AnalysisFailure(f"Analyzer response failed validation after fallbacks: {exc.error_count()} error(s)") from exc


async def analyze_image(image_bytes: bytes, *, content_type: str = "image/jpeg") -> AnalysisResponse:
    image_b64 = base64.b64encode(image_bytes).decode("ascii")
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": ANALYSIS_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{image_b64}"}},
            ],
        }
    ]
    try:
        content = await chat_completion(
            messages=messages,
            model=LLM_MODEL,
            timeout_s=VISION_TIMEOUT_S,
            max_tokens=2000,
            temperature=0.3,
        )
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("vision_analysis_failed err=%s", exc)
        raise AnalysisFailure(f"Failed to analyze image: {exc}") from exc

    if not content.strip():
        raise AnalysisFailure("Failed to analyze image: no response from LLM")

    return parse_analysis_with_fallbacks(parse_model_json(content))


def fallback_summary(product_name: str, key_actives: list[str], issue: SkinIssue) -> str:
    return f"{product_name} contains {', '.join(key_actives)} which may help address {issue.issue_name.lower()}."


async def generate_summary(product_name: str, key_actives: list[str], issue: SkinIssue) -> str:
    prompt = (
        f'Generate a 2-3 sentence explanation of why "{product_name}" with active ingredients '
        f'[{", ".join(key_actives)}] is suitable for treating "{issue.issue_name}". '
        "Keep it professional and evidence-focused."
    )
    messages = [
        {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    try:
        content = await asyncio.wait_for(
            chat_completion(
                messages=messages,
                model=SUMMARY_MODEL,
                timeout_s=SUMMARY_TIMEOUT_S,
                max_tokens=150,
                temperature=0.5,
            ),
            timeout=SUMMARY_TIMEOUT_S,
        )
    except (httpx.HTTPError, ValueError, asyncio.TimeoutError) as exc:
        logger.warning("summary_generation_fallback product=%r err=%s", product_name, str(exc) or type(exc).__name__)
        return fallback_summary(product_name, key_actives, issue)

    return content.strip() or DEFAULT_SUMMARY

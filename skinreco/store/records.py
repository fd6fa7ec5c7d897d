from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
import json
import logging
import os
import time
from typing import Any, Optional, Protocol

from skinreco.models import AffiliateClick, AnalysisRecord, ConsentRecord

try:
    import redis.asyncio as aioredis  # type: ignore[import-not-found]
    from redis.exceptions import RedisError  # type: ignore[import-not-found]
except Exception:  # pragma: no cover - optional dependency in some envs
    aioredis = None  # type: ignore[assignment]

    class RedisError(Exception):
        pass


logger = logging.getLogger("skinreco.records")

HISTORY_LIMIT = 10


class RecordStore(Protocol):
    async def save_analysis(self, record: AnalysisRecord) -> None: ...

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]: ...

    async def list_analyses(self, user_id: str, *, limit: int = HISTORY_LIMIT) -> list[AnalysisRecord]: ...

    async def save_consent(self, record: ConsentRecord) -> None: ...

    async def record_click(self, click: AffiliateClick) -> None: ...

    async def click_stats(
        self,
        product_id: Optional[str] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


def _coerce_ttl_seconds(ttl_days: Optional[float]) -> float:
    if ttl_days is None or ttl_days <= 0:
        return 0.0
    return float(ttl_days) * 86400.0


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _summarize_clicks(
    clicks: list[AffiliateClick],
    product_id: Optional[str],
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    start, end = _as_aware(start), _as_aware(end)
    totals: Counter[str] = Counter()
    users: dict[str, set[str]] = {}
    analyses: dict[str, set[str]] = {}
    for click in clicks:
        if product_id and click.product_id != product_id:
            continue
        clicked_at = _as_aware(click.clicked_at)
        if (start and clicked_at < start) or (end and clicked_at > end):
            continue
        totals[click.product_id] += 1
        if click.user_id:
            users.setdefault(click.product_id, set()).add(click.user_id)
        if click.analysis_id:
            analyses.setdefault(click.product_id, set()).add(click.analysis_id)
    return [
        {
            "product_id": pid,
            "total_clicks": count,
            "unique_users": len(users.get(pid, ())),
            "unique_analyses": len(analyses.get(pid, ())),
        }
        for pid, count in totals.most_common()
    ]


class InMemoryRecordStore(RecordStore):
    def __init__(self, *, ttl_days: Optional[float] = None) -> None:
        self._ttl_seconds = _coerce_ttl_seconds(ttl_days)
        self._lock = asyncio.Lock()
        self._analyses: dict[str, tuple[dict[str, Any], Optional[float]]] = {}
        self._consents: list[dict[str, Any]] = []
        self._clicks: list[dict[str, Any]] = []

    def _expires_at(self) -> Optional[float]:
        return None if self._ttl_seconds <= 0 else time.monotonic() + self._ttl_seconds

    async def save_analysis(self, record: AnalysisRecord) -> None:
        data = record.model_dump(mode="json")
        async with self._lock:
            self._analyses[record.analysis_id] = (data, self._expires_at())

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self._lock:
            item = self._analyses.get(analysis_id)
            if not item:
                return None
            data, expires_at = item
            if expires_at is not None and time.monotonic() >= expires_at:
                self._analyses.pop(analysis_id, None)
                return None
        return AnalysisRecord.model_validate(data)

    async def list_analyses(self, user_id: str, *, limit: int = HISTORY_LIMIT) -> list[AnalysisRecord]:
        now = time.monotonic()
        async with self._lock:
            rows = [
                data
                for data, expires_at in self._analyses.values()
                if data.get("user_id") == user_id and (expires_at is None or now < expires_at)
            ]
        records = [AnalysisRecord.model_validate(r) for r in rows]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def save_consent(self, record: ConsentRecord) -> None:
        async with self._lock:
            self._consents.append(record.model_dump(mode="json"))

    async def consents_for(self, user_id: str) -> list[ConsentRecord]:
        async with self._lock:
            rows = [c for c in self._consents if c.get("user_id") == user_id]
        return [ConsentRecord.model_validate(r) for r in rows]

    async def record_click(self, click: AffiliateClick) -> None:
        async with self._lock:
            self._clicks.append(click.model_dump(mode="json"))

    async def click_stats(
        self,
        product_id: Optional[str] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            rows = list(self._clicks)
        return _summarize_clicks([AffiliateClick.model_validate(r) for r in rows], product_id, start=start, end=end)

    async def close(self) -> None:
        return None


class RedisRecordStore(RecordStore):
    def __init__(
        self,
        *,
        redis_url: str,
        ttl_days: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skinreco",
    ) -> None:
        if aioredis is None:
            raise RuntimeError("redis dependency not available")
        self._ttl_seconds = _coerce_ttl_seconds(ttl_days)
        self._key_prefix = key_prefix.strip(":") or "skinreco"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, *parts: str) -> str:
        return ":".join([self._key_prefix, *parts])

    async def save_analysis(self, record: AnalysisRecord) -> None:
        value = _json_dumps(record.model_dump(mode="json"))
        ttl = int(max(1.0, self._ttl_seconds)) if self._ttl_seconds > 0 else None
        await self._redis.set(self._key("analysis", record.analysis_id), value, ex=ttl)
        if record.user_id:
            history_key = self._key("history", record.user_id)
            await self._redis.lpush(history_key, record.analysis_id)
            await self._redis.ltrim(history_key, 0, 99)

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        raw = await self._redis.get(self._key("analysis", analysis_id))
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except ValueError:
            logger.warning("redis_analysis_parse_failed analysis_id=%s", analysis_id)
            return None
        return AnalysisRecord.model_validate(obj)

    async def list_analyses(self, user_id: str, *, limit: int = HISTORY_LIMIT) -> list[AnalysisRecord]:
        ids = await self._redis.lrange(self._key("history", user_id), 0, -1)
        records: list[AnalysisRecord] = []
        for analysis_id in ids:
            record = await self.get_analysis(analysis_id)
            if record is not None:
                records.append(record)
            if len(records) >= limit:
                break
        return records

    async def save_consent(self, record: ConsentRecord) -> None:
        await self._redis.rpush(self._key("consent", record.user_id), _json_dumps(record.model_dump(mode="json")))

    async def record_click(self, click: AffiliateClick) -> None:
        await self._redis.rpush(self._key("clicks"), _json_dumps(click.model_dump(mode="json")))

    async def click_stats(
        self,
        product_id: Optional[str] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        raw_rows = await self._redis.lrange(self._key("clicks"), 0, -1)
        clicks: list[AffiliateClick] = []
        for raw in raw_rows:
            try:
                clicks.append(AffiliateClick.model_validate(json.loads(raw)))
            except ValueError:
                continue
        return _summarize_clicks(clicks, product_id, start=start, end=end)

    async def close(self) -> None:
        await self._redis.aclose()


class PersistentRecordStore(RecordStore):
    """Redis-backed when ``REDIS_URL`` is reachable, in-memory otherwise."""

    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        ttl_days: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "skinreco",
    ) -> None:
        self._redis_url = redis_url
        self._ttl_days = ttl_days if ttl_days is not None else _env_float("RECORD_TTL_DAYS", 0.0)
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix
        self._backend: RecordStore = InMemoryRecordStore(ttl_days=self._ttl_days)
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None

        if not redis_url:
            logger.info("record_store_backend=memory reason=missing_REDIS_URL")
            return

        if aioredis is None:
            logger.warning("record_store_backend=memory reason=redis_dependency_missing")
            return

        try:
            redis_backend = RedisRecordStore(
                redis_url=redis_url,
                ttl_days=self._ttl_days,
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except (RedisError, OSError) as exc:
            logger.warning("record_store_backend=memory reason=redis_unavailable err=%s", getattr(exc, "message", str(exc)))
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("record_store_backend=redis")

    async def save_analysis(self, record: AnalysisRecord) -> None:
        try:
            await self._backend.save_analysis(record)
        except RedisError as exc:
            logger.warning("record_store_save_analysis_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.save_analysis(record)

    async def get_analysis(self, analysis_id: str) -> Optional[AnalysisRecord]:
        try:
            return await self._backend.get_analysis(analysis_id)
        except RedisError as exc:
            logger.warning("record_store_get_analysis_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            return None

    async def list_analyses(self, user_id: str, *, limit: int = HISTORY_LIMIT) -> list[AnalysisRecord]:
        try:
            return await self._backend.list_analyses(user_id, limit=limit)
        except RedisError as exc:
            logger.warning("record_store_list_analyses_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            return []

    async def save_consent(self, record: ConsentRecord) -> None:
        try:
            await self._backend.save_consent(record)
        except RedisError as exc:
            logger.warning("record_store_save_consent_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.save_consent(record)

    async def record_click(self, click: AffiliateClick) -> None:
        try:
            await self._backend.record_click(click)
        except RedisError as exc:
            logger.warning("record_store_record_click_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.record_click(click)

    async def click_stats(
        self,
        product_id: Optional[str] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        try:
            return await self._backend.click_stats(product_id, start=start, end=end)
        except RedisError as exc:
            logger.warning("record_store_click_stats_failed backend=%s err=%s", self._backend_kind, getattr(exc, "message", str(exc)))
            await self._fallback_to_memory(reason="redis_error")
            return []

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        try:
            await self._backend.close()
        except RedisError as exc:
            logger.info("record_store_close_failed err=%s", exc)
        self._backend = InMemoryRecordStore(ttl_days=self._ttl_days)
        self._backend_kind = "memory"
        logger.warning("record_store_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default

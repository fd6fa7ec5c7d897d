from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
import unittest
import uuid

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinreco.models import AffiliateClick, AnalysisRecord, ConsentRecord
from skinreco.store.records import InMemoryRecordStore, PersistentRecordStore


def _record(user_id: str | None, minutes_ago: int) -> AnalysisRecord:
    return AnalysisRecord(
        analysis_id=str(uuid.uuid4()),
        user_id=user_id,
        overall_assessment="Balanced skin.",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


def _click(product_id: str, user_id: str | None = None, analysis_id: str | None = None) -> AffiliateClick:
    return AffiliateClick(
        click_id=str(uuid.uuid4()),
        product_id=product_id,
        user_id=user_id,
        analysis_id=analysis_id,
        utm_source="skincare_app",
        utm_medium="recommendation",
        utm_campaign="skin_analysis",
        clicked_at=datetime.now(timezone.utc),
    )


class TestInMemoryRecordStore(unittest.IsolatedAsyncioTestCase):
    async def test_save_and_get_analysis(self) -> None:
        store = InMemoryRecordStore()
        record = _record("uid_1", 0)
        await store.save_analysis(record)

        loaded = await store.get_analysis(record.analysis_id)

        self.assertEqual(loaded, record)
        self.assertIsNone(await store.get_analysis("missing"))

    async def test_history_is_newest_first_and_limited(self) -> None:
        store = InMemoryRecordStore()
        records = [_record("uid_1", minutes) for minutes in range(12)]
        for r in reversed(records):
            await store.save_analysis(r)
        await store.save_analysis(_record("uid_2", 0))

        history = await store.list_analyses("uid_1")

        self.assertEqual(len(history), 10)
        self.assertEqual([h.analysis_id for h in history], [r.analysis_id for r in records[:10]])

    async def test_click_stats_group_by_product(self) -> None:
        store = InMemoryRecordStore()
        await store.record_click(_click("p1", "u1", "a1"))
        await store.record_click(_click("p1", "u1", "a2"))
        await store.record_click(_click("p1", "u2"))
        await store.record_click(_click("p2"))

        stats = await store.click_stats()

        self.assertEqual(
            stats,
            [
                {"product_id": "p1", "total_clicks": 3, "unique_users": 2, "unique_analyses": 2},
                {"product_id": "p2", "total_clicks": 1, "unique_users": 0, "unique_analyses": 0},
            ],
        )
        self.assertEqual([s["product_id"] for s in await store.click_stats("p2")], ["p2"])

    async def test_click_stats_respect_date_window(self) -> None:
        store = InMemoryRecordStore()
        now = datetime.now(timezone.utc)
        for days_ago, user in [(10, "u1"), (3, "u2"), (1, "u3")]:
            click = _click("p1", user)
            await store.record_click(click.model_copy(update={"clicked_at": now - timedelta(days=days_ago)}))

        window = await store.click_stats(start=now - timedelta(days=5), end=now - timedelta(days=2))
        since = await store.click_stats(start=now - timedelta(days=5))
        naive_until = await store.click_stats(end=(now - timedelta(days=5)).replace(tzinfo=None))

        self.assertEqual(window, [{"product_id": "p1", "total_clicks": 1, "unique_users": 1, "unique_analyses": 0}])
        self.assertEqual(since[0]["total_clicks"], 2)
        self.assertEqual(naive_until[0]["total_clicks"], 1)

    async def test_consent_records_are_kept_per_user(self) -> None:
        store = InMemoryRecordStore()
        await store.save_consent(
            ConsentRecord(user_id="u1", consent_text="ok", consent_version="1.0", created_at=datetime.now(timezone.utc))
        )
        self.assertEqual(len(await store.consents_for("u1")), 1)
        self.assertEqual(await store.consents_for("u2"), [])


class TestPersistentRecordStore(unittest.IsolatedAsyncioTestCase):
    async def test_initialize_falls_back_when_redis_unavailable(self) -> None:
        store = PersistentRecordStore(
            redis_url="redis://localhost:6390/0",
            connect_timeout_s=0.05,
            socket_timeout_s=0.05,
        )
        await store.initialize()
        self.assertEqual(store.backend_kind, "memory")

        record = _record("uid_1", 0)
        await store.save_analysis(record)
        loaded = await store.get_analysis(record.analysis_id)
        self.assertIsNotNone(loaded)
        assert loaded is not None
        self.assertEqual(loaded.user_id, "uid_1")

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
import sys
import unittest
import uuid

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from skinreco.errors import MatchingFailure
from skinreco.models import AnalysisResponse, EvidenceCreate, ProductCreate, SkinIssue
from skinreco.services.recommendations import ProductEnricher, RecommendationAssembler
from skinreco.store.catalog import InMemoryCatalog


def _issue(issue_id: str = "issue_1", tags: list[str] | None = None, name: str = "Acne") -> SkinIssue:
    return SkinIssue(
        issue_id=issue_id,
        issue_name=name,
        confidence=0.8,
        severity="moderate",
        description="Visible breakouts",
        affected_areas=["forehead"],
        tags=tags or [],
    )


def _product(name: str, tags: list[str], actives: list[str]) -> ProductCreate:
    return ProductCreate(
        name=name,
        brand="Brand",
        affiliate_url="https://shop.example.com/p",
        key_actives=actives,
        tags=tags,
    )


def _evidence(active: str, strength: str, year: int) -> EvidenceCreate:
    return EvidenceCreate(
        active_ingredient=active,
        paper_title=f"{active} {strength} {year}",
        source="Journal",
        year=year,
        short_summary="Summary",
        strength_label=strength,
    )


async def _echo_summary(name: str, actives: list[str], issue: SkinIssue) -> str:
    return f"{name} for {issue.issue_name}"


async def _failing_summary(name: str, actives: list[str], issue: SkinIssue) -> str:
    raise RuntimeError("provider down")


class _RecordingEvidenceStore:
    def __init__(self, inner) -> None:
        self._inner = inner
        self.lookups: list[str] = []

    async def find_by_active_ingredient(self, active_ingredient: str):
        self.lookups.append(active_ingredient)
        return await self._inner.find_by_active_ingredient(active_ingredient)


class _BrokenProductStore:
    async def find_by_tags(self, tags: list[str]):
        raise ConnectionError("database unavailable")


class TestProductEnricher(unittest.IsolatedAsyncioTestCase):
    async def test_evidence_capped_at_three_from_first_two_actives(self) -> None:
        catalog = InMemoryCatalog()
        for year in (2020, 2018):
            await catalog.evidence.create(_evidence("Niacinamide", "strong", year))
        for year in (2021, 2019):
            await catalog.evidence.create(_evidence("Retinol", "moderate", year))
        await catalog.evidence.create(_evidence("Peptides", "strong", 2022))
        product = await catalog.products.create(_product("Serum", ["aging"], ["Niacinamide", "Retinol", "Peptides"]))
        recorder = _RecordingEvidenceStore(catalog.evidence)

        rec = await ProductEnricher(recorder, _echo_summary).enrich(product, _issue())

        self.assertEqual(recorder.lookups, ["Niacinamide", "Retinol"])
        self.assertEqual(
            [(e.active_ingredient, e.year) for e in rec.evidence],
            [("Niacinamide", 2020), ("Niacinamide", 2018), ("Retinol", 2021)],
        )
        self.assertEqual(rec.llm_generated_summary, "Serum for Acne")
        self.assertIsNone(rec.relevance_score)

    async def test_failing_summary_is_omitted_not_raised(self) -> None:
        catalog = InMemoryCatalog()
        await catalog.evidence.create(_evidence("Niacinamide", "strong", 2020))
        product = await catalog.products.create(_product("Serum", ["acne"], ["Niacinamide"]))

        with self.assertLogs("skinreco.recommendations", level="WARNING") as logs:
            rec = await ProductEnricher(catalog.evidence, _failing_summary).enrich(product, _issue())

        self.assertIsNone(rec.llm_generated_summary)
        self.assertEqual(rec.product, product)
        self.assertEqual(len(rec.evidence), 1)
        self.assertIn("summary_generation_failed", logs.output[0])
        self.assertNotIn("llm_generated_summary", rec.model_dump(exclude_none=True))

    async def test_summary_receives_all_key_actives(self) -> None:
        catalog = InMemoryCatalog()
        product = await catalog.products.create(_product("Serum", ["acne"], ["A", "B", "C"]))
        seen: list[list[str]] = []

        async def _capture(name: str, actives: list[str], issue: SkinIssue) -> str:
            seen.append(actives)
            return "ok"

        rec = await ProductEnricher(catalog.evidence, _capture).enrich(product, _issue())

        self.assertEqual(seen, [["A", "B", "C"]])
        self.assertEqual(rec.evidence, [])


class TestRecommendationAssembler(unittest.IsolatedAsyncioTestCase):
    async def test_single_match_with_ranked_evidence(self) -> None:
        catalog = InMemoryCatalog()
        await catalog.evidence.create(_evidence("Niacinamide", "moderate", 2015))
        await catalog.evidence.create(_evidence("Niacinamide", "strong", 2020))
        await catalog.products.create(_product("Clear Serum", ["acne", "oily_skin"], ["Niacinamide"]))
        assembler = RecommendationAssembler(catalog.products, catalog.evidence, _echo_summary)

        result = await assembler.assemble([_issue(tags=["acne"])])

        self.assertEqual(len(result), 1)
        self.assertEqual(len(result[0].recommendations), 1)
        evidence = result[0].recommendations[0].evidence
        self.assertEqual([(e.strength_label, e.year) for e in evidence], [("strong", 2020), ("moderate", 2015)])

    async def test_unknown_tag_yields_empty_recommendations(self) -> None:
        catalog = InMemoryCatalog()
        await catalog.products.create(_product("Clear Serum", ["acne"], ["Niacinamide"]))
        assembler = RecommendationAssembler(catalog.products, catalog.evidence, _echo_summary)

        result = await assembler.assemble([_issue(tags=["nonexistent_tag"]), _issue("issue_2")])

        self.assertEqual([r.recommendations for r in result], [[], []])

    async def test_issues_are_bounded_and_independent(self) -> None:
        catalog = InMemoryCatalog()
        for n in range(5):
            await catalog.products.create(_product(f"Bright {n}", ["hyperpigmentation"], ["Vitamin C"]))

        async def _flaky(name: str, actives: list[str], issue: SkinIssue) -> str:
            if issue.issue_id == "issue_1" and name == "Bright 1":
                await asyncio.sleep(0.05)
                raise TimeoutError("slow provider")
            return f"{name}/{issue.issue_id}"

        assembler = RecommendationAssembler(catalog.products, catalog.evidence, _flaky)
        issues = [
            _issue("issue_1", ["hyperpigmentation"], "Dark Spots"),
            _issue("issue_2", ["hyperpigmentation"], "Uneven Tone"),
        ]

        result = await assembler.assemble(issues)

        self.assertEqual([r.issue.issue_id for r in result], ["issue_1", "issue_2"])
        for entry in result:
            self.assertEqual([r.product.name for r in entry.recommendations], ["Bright 0", "Bright 1", "Bright 2", "Bright 3"])
        self.assertIsNone(result[0].recommendations[1].llm_generated_summary)
        self.assertEqual(
            [r.llm_generated_summary for r in result[1].recommendations],
            ["Bright 0/issue_2", "Bright 1/issue_2", "Bright 2/issue_2", "Bright 3/issue_2"],
        )

    async def test_order_follows_match_rank_not_completion(self) -> None:
        catalog = InMemoryCatalog()
        await catalog.products.create(_product("Best", ["acne", "oily_skin", "blackheads"], []))
        await catalog.products.create(_product("Good", ["acne", "oily_skin"], []))
        await catalog.products.create(_product("Okay", ["acne"], []))
        delays = {"Best": 0.06, "Good": 0.03, "Okay": 0.0}

        async def _slow_for_best(name: str, actives: list[str], issue: SkinIssue) -> str:
            await asyncio.sleep(delays[name])
            return name

        assembler = RecommendationAssembler(catalog.products, catalog.evidence, _slow_for_best)

        result = await assembler.assemble([_issue(tags=["acne", "oily_skin", "blackheads"])])

        self.assertEqual([r.product.name for r in result[0].recommendations], ["Best", "Good", "Okay"])

    async def test_concurrency_is_bounded(self) -> None:
        catalog = InMemoryCatalog()
        for n in range(4):
            await catalog.products.create(_product(f"P{n}", ["acne"], []))
        active = 0
        peak = 0

        async def _tracking(name: str, actives: list[str], issue: SkinIssue) -> str:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return name

        assembler = RecommendationAssembler(catalog.products, catalog.evidence, _tracking, max_concurrency=2)

        result = await assembler.assemble([_issue(f"issue_{n}", ["acne"]) for n in range(3)])

        self.assertEqual(sum(len(r.recommendations) for r in result), 12)
        self.assertLessEqual(peak, 2)

    async def test_matcher_failure_aborts_assembly(self) -> None:
        catalog = InMemoryCatalog()
        assembler = RecommendationAssembler(_BrokenProductStore(), catalog.evidence, _echo_summary)

        with self.assertRaises(MatchingFailure):
            await assembler.assemble([_issue(tags=["acne"])])

    async def test_matcher_failure_cancels_other_issues(self) -> None:
        catalog = InMemoryCatalog()
        for n in range(4):
            await catalog.products.create(_product(f"P{n}", ["acne"], []))
        finished: list[str] = []

        class _FailsOnBrokenTag:
            async def find_by_tags(self, tags: list[str]):
                if "broken" in tags:
                    raise ConnectionError("database unavailable")
                return await catalog.products.find_by_tags(tags)

        async def _slow(name: str, actives: list[str], issue: SkinIssue) -> str:
            await asyncio.sleep(0.05)
            finished.append(name)
            return name

        assembler = RecommendationAssembler(_FailsOnBrokenTag(), catalog.evidence, _slow)

        with self.assertRaises(MatchingFailure):
            await assembler.assemble([_issue("issue_1", ["acne"]), _issue("issue_2", ["broken"])])
        await asyncio.sleep(0.1)

        self.assertEqual(finished, [])

    async def test_build_final_result_wraps_analysis_header(self) -> None:
        catalog = InMemoryCatalog()
        await catalog.products.create(_product("Clear Serum", ["acne"], []))
        assembler = RecommendationAssembler(catalog.products, catalog.evidence, None)
        analysis = AnalysisResponse(
            analysis_id=uuid.uuid4(),
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            skin_tone="medium",
            overall_assessment="Mostly clear skin.",
            detected_issues=[_issue(tags=["acne"])],
        )

        final = await assembler.build_final_result(analysis)

        self.assertEqual(final.analysis.analysis_id, str(analysis.analysis_id))
        self.assertEqual(final.analysis.timestamp, "2024-01-01T00:00:00+00:00")
        self.assertEqual(final.analysis.skin_tone, "medium")
        self.assertEqual(len(final.issues[0].recommendations), 1)
        self.assertIsNone(final.issues[0].recommendations[0].llm_generated_summary)

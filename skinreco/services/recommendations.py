"""Issue-to-product recommendation assembly.

For every detected issue the assembler asks the product store for tag matches,
keeps the top candidates and enriches each one with supporting evidence and a
generated rationale. Enrichment runs concurrently; results are put back in
candidate order so the output does not depend on completion order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from skinreco.errors import MatchingFailure, ServiceError
from skinreco.models import (
    AnalysisResponse,
    AnalysisSummary,
    Evidence,
    FinalResult,
    IssueRecommendation,
    Product,
    ProductRecommendation,
    SkinIssue,
)
from skinreco.store.catalog import EvidenceStore, ProductStore

logger = logging.getLogger("skinreco.recommendations")

MAX_PRODUCTS_PER_ISSUE = 4
MAX_ACTIVES_FOR_EVIDENCE = 2
MAX_EVIDENCE_PER_PRODUCT = 3
DEFAULT_MAX_CONCURRENCY = 8

SummarizeFn = Callable[[str, list[str], SkinIssue], Awaitable[str]]


class ProductEnricher:
    def __init__(self, evidence: EvidenceStore, summarize: Optional[SummarizeFn]) -> None:
        self._evidence = evidence
        self._summarize = summarize

    async def collect_evidence(self, product: Product) -> list[Evidence]:
        actives = product.key_actives[:MAX_ACTIVES_FOR_EVIDENCE]
        per_active = await asyncio.gather(*(self._evidence.find_by_active_ingredient(a) for a in actives))
        flattened = [e for batch in per_active for e in batch]
        return flattened[:MAX_EVIDENCE_PER_PRODUCT]

    async def summarize(self, product: Product, issue: SkinIssue) -> Optional[str]:
        if self._summarize is None:
            return None
        try:
            summary = await self._summarize(product.name, list(product.key_actives), issue)
        except Exception as exc:
            # Losing the blurb is cosmetic; the recommendation still ships.
            logger.warning(
                "summary_generation_failed product_id=%s issue_id=%s err=%s",
                product.product_id,
                issue.issue_id,
                str(exc) or type(exc).__name__,
            )
            return None
        return summary or None

    async def enrich(self, product: Product, issue: SkinIssue) -> ProductRecommendation:
        evidence, summary = await asyncio.gather(
            self.collect_evidence(product),
            self.summarize(product, issue),
        )
        return ProductRecommendation(
            product=product,
            evidence=evidence,
            llm_generated_summary=summary,
        )


class RecommendationAssembler:
    def __init__(
        self,
        products: ProductStore,
        evidence: EvidenceStore,
        summarize: Optional[SummarizeFn] = None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._products = products
        self._enricher = ProductEnricher(evidence, summarize)
        self._max_concurrency = max(1, int(max_concurrency))

    @property
    def enricher(self) -> ProductEnricher:
        return self._enricher

    async def match(self, issue: SkinIssue) -> list[Product]:
        try:
            candidates = await self._products.find_by_tags(list(issue.tags or []))
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("product_matching_failed issue_id=%s err=%s", issue.issue_id, exc)
            raise MatchingFailure(f"Product matching failed for issue {issue.issue_id}") from exc
        return candidates[:MAX_PRODUCTS_PER_ISSUE]

    async def assemble(self, issues: Sequence[SkinIssue]) -> list[IssueRecommendation]:
        # One semaphore per request; nothing is shared across requests.
        sem = asyncio.Semaphore(self._max_concurrency)

        async def _enrich_one(product: Product, issue: SkinIssue) -> ProductRecommendation:
            async with sem:
                return await self._enricher.enrich(product, issue)

        async def _for_issue(issue: SkinIssue) -> IssueRecommendation:
            candidates = await self.match(issue)
            if not candidates:
                logger.info("no_products_matched issue_id=%s tags=%s", issue.issue_id, list(issue.tags or []))
                return IssueRecommendation(issue=issue, recommendations=[])
            recommendations = await asyncio.gather(*(_enrich_one(p, issue) for p in candidates))
            return IssueRecommendation(issue=issue, recommendations=list(recommendations))

        tasks = [asyncio.ensure_future(_for_issue(i)) for i in issues]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # First failure wins; cancel and drain the remaining issues.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def build_final_result(self, analysis: AnalysisResponse) -> FinalResult:
        issues = await self.assemble(analysis.detected_issues)
        return FinalResult(
            analysis=AnalysisSummary(
                analysis_id=str(analysis.analysis_id),
                timestamp=analysis.timestamp.isoformat(),
                skin_tone=analysis.skin_tone,
                overall_assessment=analysis.overall_assessment,
            ),
            issues=issues,
        )

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Optional, Protocol

from skinreco.models import (
    STRENGTH_RANK,
    Evidence,
    EvidenceCreate,
    EvidenceUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
)

logger = logging.getLogger("skinreco.catalog")

MAX_TAG_MATCHES = 10
MAX_EVIDENCE_PER_ACTIVE = 5


class ProductStore(Protocol):
    async def find_by_tags(self, tags: list[str]) -> list[Product]: ...

    async def find_by_id(self, product_id: str) -> Optional[Product]: ...

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Product]: ...

    async def create(self, product: ProductCreate) -> Product: ...

    async def update(self, product_id: str, updates: ProductUpdate) -> Optional[Product]: ...

    async def delete(self, product_id: str) -> bool: ...


class EvidenceStore(Protocol):
    async def find_by_active_ingredient(self, active_ingredient: str) -> list[Evidence]: ...

    async def find_by_product_id(self, product_id: str) -> list[Evidence]: ...

    async def find_by_id(self, evidence_id: str) -> Optional[Evidence]: ...

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Evidence]: ...

    async def create(self, evidence: EvidenceCreate) -> Evidence: ...

    async def update(self, evidence_id: str, updates: EvidenceUpdate) -> Optional[Evidence]: ...

    async def delete(self, evidence_id: str) -> bool: ...

    async def link_product_to_evidence(self, product_id: str, evidence_id: str) -> None: ...

    async def unlink_product_from_evidence(self, product_id: str, evidence_id: str) -> None: ...


def evidence_sort_key(evidence: Evidence) -> tuple[int, int]:
    return (STRENGTH_RANK.get(evidence.strength_label, len(STRENGTH_RANK) + 1), -evidence.year)


def tag_overlap(product_tags: list[str], tags: set[str]) -> int:
    return len(set(product_tags) & tags)


class InMemoryProductStore:
    def __init__(self, links: Optional["_LinkTable"] = None) -> None:
        self._lock = asyncio.Lock()
        self._items: dict[str, Product] = {}
        self._links = links

    async def find_by_tags(self, tags: list[str]) -> list[Product]:
        wanted = {t for t in tags if t}
        if not wanted:
            return []
        async with self._lock:
            products = list(self._items.values())
        scored = [(tag_overlap(p.tags, wanted), p) for p in products]
        # sorted() is stable, so ties keep catalog insertion order.
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: -item[0])
        return [p.model_copy(deep=True) for _, p in ranked[:MAX_TAG_MATCHES]]

    async def find_by_id(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            product = self._items.get(product_id)
        return product.model_copy(deep=True) if product else None

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Product]:
        async with self._lock:
            newest_first = list(reversed(self._items.values()))
        return [p.model_copy(deep=True) for p in itertools.islice(newest_first, offset, offset + limit)]

    async def create(self, product: ProductCreate) -> Product:
        created = Product(product_id=str(uuid.uuid4()), **product.model_dump())
        async with self._lock:
            self._items[created.product_id] = created
        return created.model_copy(deep=True)

    async def update(self, product_id: str, updates: ProductUpdate) -> Optional[Product]:
        patch = updates.model_dump(exclude_unset=True)
        async with self._lock:
            current = self._items.get(product_id)
            if current is None:
                return None
            if not patch:
                return current.model_copy(deep=True)
            updated = Product.model_validate({**current.model_dump(), **patch})
            self._items[product_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, product_id: str) -> bool:
        async with self._lock:
            removed = self._items.pop(product_id, None)
        if removed is not None and self._links is not None:
            await self._links.drop(product_id=product_id)
        return removed is not None


class _LinkTable:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._pairs: dict[tuple[str, str], None] = {}

    async def add(self, product_id: str, evidence_id: str) -> None:
        async with self._lock:
            self._pairs.setdefault((product_id, evidence_id), None)

    async def remove(self, product_id: str, evidence_id: str) -> None:
        async with self._lock:
            self._pairs.pop((product_id, evidence_id), None)

    async def evidence_ids_for(self, product_id: str) -> list[str]:
        async with self._lock:
            return [e for p, e in self._pairs if p == product_id]

    async def drop(self, *, product_id: Optional[str] = None, evidence_id: Optional[str] = None) -> None:
        async with self._lock:
            for pair in list(self._pairs):
                if (product_id is not None and pair[0] == product_id) or (evidence_id is not None and pair[1] == evidence_id):
                    del self._pairs[pair]

    async def count(self) -> int:
        async with self._lock:
            return len(self._pairs)


class InMemoryEvidenceStore:
    def __init__(self, links: Optional[_LinkTable] = None) -> None:
        self._lock = asyncio.Lock()
        self._items: dict[str, Evidence] = {}
        self._links = links or _LinkTable()

    async def find_by_active_ingredient(self, active_ingredient: str) -> list[Evidence]:
        needle = (active_ingredient or "").lower()
        async with self._lock:
            matches = [e for e in self._items.values() if e.active_ingredient.lower() == needle]
        matches.sort(key=evidence_sort_key)
        return [e.model_copy(deep=True) for e in matches[:MAX_EVIDENCE_PER_ACTIVE]]

    async def find_by_product_id(self, product_id: str) -> list[Evidence]:
        ids = await self._links.evidence_ids_for(product_id)
        async with self._lock:
            linked = [self._items[i] for i in ids if i in self._items]
        linked.sort(key=evidence_sort_key)
        return [e.model_copy(deep=True) for e in linked]

    async def find_by_id(self, evidence_id: str) -> Optional[Evidence]:
        async with self._lock:
            evidence = self._items.get(evidence_id)
        return evidence.model_copy(deep=True) if evidence else None

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Evidence]:
        async with self._lock:
            rows = sorted(self._items.values(), key=lambda e: -e.year)
        return [e.model_copy(deep=True) for e in rows[offset : offset + limit]]

    async def create(self, evidence: EvidenceCreate) -> Evidence:
        created = Evidence(evidence_id=str(uuid.uuid4()), **evidence.model_dump())
        async with self._lock:
            self._items[created.evidence_id] = created
        return created.model_copy(deep=True)

    async def update(self, evidence_id: str, updates: EvidenceUpdate) -> Optional[Evidence]:
        patch = updates.model_dump(exclude_unset=True)
        async with self._lock:
            current = self._items.get(evidence_id)
            if current is None:
                return None
            if not patch:
                return current.model_copy(deep=True)
            updated = Evidence.model_validate({**current.model_dump(), **patch})
            self._items[evidence_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, evidence_id: str) -> bool:
        async with self._lock:
            removed = self._items.pop(evidence_id, None)
        if removed is not None:
            await self._links.drop(evidence_id=evidence_id)
        return removed is not None

    async def link_product_to_evidence(self, product_id: str, evidence_id: str) -> None:
        await self._links.add(product_id, evidence_id)

    async def unlink_product_from_evidence(self, product_id: str, evidence_id: str) -> None:
        await self._links.remove(product_id, evidence_id)

    async def link_count(self) -> int:
        return await self._links.count()


class InMemoryCatalog:
    """Product and evidence stores sharing one link table."""

    backend_kind = "memory"

    def __init__(self) -> None:
        links = _LinkTable()
        self.products = InMemoryProductStore(links)
        self.evidence = InMemoryEvidenceStore(links)

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

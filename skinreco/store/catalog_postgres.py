from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import asyncpg

from skinreco.models import (
    Evidence,
    EvidenceCreate,
    EvidenceUpdate,
    Product,
    ProductCreate,
    ProductUpdate,
)
from skinreco.store.catalog import MAX_EVIDENCE_PER_ACTIVE, MAX_TAG_MATCHES

logger = logging.getLogger("skinreco.catalog.postgres")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
    product_id UUID PRIMARY KEY,
    name TEXT NOT NULL,
    brand TEXT NOT NULL,
    affiliate_url TEXT NOT NULL,
    price NUMERIC(10, 2),
    image_url TEXT,
    inci TEXT[] NOT NULL DEFAULT '{}',
    key_actives TEXT[] NOT NULL DEFAULT '{}',
    tags TEXT[] NOT NULL DEFAULT '{}',
    description TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_products_tags ON products USING GIN (tags);

CREATE TABLE IF NOT EXISTS evidence (
    evidence_id UUID PRIMARY KEY,
    active_ingredient TEXT NOT NULL,
    paper_title TEXT NOT NULL,
    source TEXT NOT NULL,
    year INTEGER NOT NULL,
    short_summary TEXT NOT NULL,
    strength_label TEXT NOT NULL CHECK (strength_label IN ('strong', 'moderate', 'preliminary')),
    pubmed_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_evidence_active ON evidence (LOWER(active_ingredient));

CREATE TABLE IF NOT EXISTS product_evidence (
    product_id UUID NOT NULL REFERENCES products(product_id) ON DELETE CASCADE,
    evidence_id UUID NOT NULL REFERENCES evidence(evidence_id) ON DELETE CASCADE,
    PRIMARY KEY (product_id, evidence_id)
);
"""

_STRENGTH_ORDER_SQL = """
    CASE {col}
        WHEN 'strong' THEN 1
        WHEN 'moderate' THEN 2
        WHEN 'preliminary' THEN 3
    END
"""

_PRODUCT_COLUMNS = ("name", "brand", "affiliate_url", "price", "image_url", "inci", "key_actives", "tags", "description")
_EVIDENCE_COLUMNS = ("active_ingredient", "paper_title", "source", "year", "short_summary", "strength_label", "pubmed_url")


def _row_to_product(row: Any) -> Product:
    price = row["price"]
    return Product(
        product_id=str(row["product_id"]),
        name=row["name"],
        brand=row["brand"],
        affiliate_url=row["affiliate_url"],
        price=float(price) if price is not None else None,
        image_url=row["image_url"] or None,
        inci=list(row["inci"] or []),
        key_actives=list(row["key_actives"] or []),
        tags=list(row["tags"] or []),
        description=row["description"] or None,
    )


def _row_to_evidence(row: Any) -> Evidence:
    return Evidence(
        evidence_id=str(row["evidence_id"]),
        active_ingredient=row["active_ingredient"],
        paper_title=row["paper_title"],
        source=row["source"],
        year=int(row["year"]),
        short_summary=row["short_summary"],
        strength_label=row["strength_label"],
        pubmed_url=row["pubmed_url"] or None,
    )


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _update_sql(table: str, key: str, patch: dict[str, Any], allowed: tuple[str, ...]) -> tuple[str, list[Any]]:
    fields: list[str] = []
    values: list[Any] = []
    for column in allowed:
        if column in patch:
            values.append(patch[column])
            fields.append(f"{column} = ${len(values)}")
    fields.append("updated_at = NOW()")
    sql = f"UPDATE {table} SET {', '.join(fields)} WHERE {key} = ${len(values) + 1} RETURNING *"
    return sql, values


class PostgresProductStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_tags(self, tags: list[str]) -> list[Product]:
        wanted = [t for t in tags if t]
        if not wanted:
            return []
        sql = f"""
            SELECT * FROM products
            WHERE tags && $1::text[]
            ORDER BY (SELECT COUNT(DISTINCT tag) FROM unnest(tags) tag WHERE tag = ANY($1::text[])) DESC, created_at ASC
            LIMIT {MAX_TAG_MATCHES}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, wanted)
        return [_row_to_product(r) for r in rows]

    async def find_by_id(self, product_id: str) -> Optional[Product]:
        pid = _as_uuid(product_id)
        if pid is None:
            return None
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM products WHERE product_id = $1", pid)
        return _row_to_product(row) if row else None

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Product]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM products ORDER BY created_at DESC LIMIT $1 OFFSET $2", limit, offset)
        return [_row_to_product(r) for r in rows]

    async def create(self, product: ProductCreate) -> Product:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO products (product_id, name, brand, affiliate_url, price, image_url, inci, key_actives, tags, description)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
                """,
                uuid.uuid4(),
                product.name,
                product.brand,
                product.affiliate_url,
                product.price,
                product.image_url,
                product.inci,
                product.key_actives,
                product.tags,
                product.description,
            )
        return _row_to_product(row)

    async def update(self, product_id: str, updates: ProductUpdate) -> Optional[Product]:
        pid = _as_uuid(product_id)
        if pid is None:
            return None
        patch = updates.model_dump(exclude_unset=True)
        if not patch:
            return await self.find_by_id(product_id)
        sql, values = _update_sql("products", "product_id", patch, _PRODUCT_COLUMNS)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(sql, *values, pid)
        return _row_to_product(row) if row else None

    async def delete(self, product_id: str) -> bool:
        pid = _as_uuid(product_id)
        if pid is None:
            return False
        async with self._pool.acquire() as conn:
            status = await conn.execute("DELETE FROM products WHERE product_id = $1", pid)
        return not status.endswith(" 0")


class PostgresEvidenceStore:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_by_active_ingredient(self, active_ingredient: str) -> list[Evidence]:
        sql = f"""
            SELECT * FROM evidence
            WHERE LOWER(active_ingredient) = LOWER($1)
            ORDER BY {_STRENGTH_ORDER_SQL.format(col="strength_label")}, year DESC
            LIMIT {MAX_EVIDENCE_PER_ACTIVE}
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, active_ingredient)
        return [_row_to_evidence(r) for r in rows]

    async def find_by_product_id(self, product_id: str) -> list[Evidence]:
        pid = _as_uuid(product_id)
        if pid is None:
            return []
        sql = f"""
            SELECT e.* FROM evidence e
            JOIN product_evidence pe ON e.evidence_id = pe.evidence_id
            WHERE pe.product_id = $1
            ORDER BY {_STRENGTH_ORDER_SQL.format(col="e.strength_label")}, e.year DESC
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, pid)
        return [_row_to_evidence(r) for r in rows]

    async def find_by_id(self, evidence_id: str) -> Optional[Evidence]:
        eid = _as_uuid(evidence_id)
        if eid is None:
            return None
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM evidence WHERE evidence_id = $1", eid)
        return _row_to_evidence(row) if row else None

    async def find_all(self, limit: int = 50, offset: int = 0) -> list[Evidence]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM evidence ORDER BY year DESC LIMIT $1 OFFSET $2", limit, offset)
        return [_row_to_evidence(r) for r in rows]

    async def create(self, evidence: EvidenceCreate) -> Evidence:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO evidence (evidence_id, active_ingredient, paper_title, source, year, short_summary, strength_label, pubmed_url)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
                """,
                uuid.uuid4(),
                evidence.active_ingredient,
                evidence.paper_title,
                evidence.source,
                evidence.year,
                evidence.short_summary,
                evidence.strength_label,
                evidence.pubmed_url,
            )
        return _row_to_evidence(row)

    async def update(self, evidence_id: str, updates: EvidenceUpdate) -> Optional[Evidence]:
        eid = _as_uuid(evidence_id)
        if eid is None:
            return None
        patch = updates.model_dump(exclude_unset=True)
        if not patch:
            return await self.find_by_id(evidence_id)
        sql, values = _update_sql("evidence", "evidence_id", patch, _EVIDENCE_COLUMNS)
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(sql, *values, eid)
        return _row_to_evidence(row) if row else None

    async def delete(self, evidence_id: str) -> bool:
        eid = _as_uuid(evidence_id)
        if eid is None:
            return False
        async with self._pool.acquire() as conn:
            status = await conn.execute("DELETE FROM evidence WHERE evidence_id = $1", eid)
        return not status.endswith(" 0")

    async def link_product_to_evidence(self, product_id: str, evidence_id: str) -> None:
        pid, eid = _as_uuid(product_id), _as_uuid(evidence_id)
        if pid is None or eid is None:
            raise ValueError("product_id and evidence_id must be UUIDs")
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO product_evidence (product_id, evidence_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                pid,
                eid,
            )

    async def unlink_product_from_evidence(self, product_id: str, evidence_id: str) -> None:
        pid, eid = _as_uuid(product_id), _as_uuid(evidence_id)
        if pid is None or eid is None:
            return
        async with self._pool.acquire() as conn:
            await conn.execute(
                "DELETE FROM product_evidence WHERE product_id = $1 AND evidence_id = $2",
                pid,
                eid,
            )


class PostgresCatalog:
    backend_kind = "postgres"

    def __init__(self, *, database_url: str, min_size: int = 1, max_size: int = 10) -> None:
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self.products: Optional[PostgresProductStore] = None
        self.evidence: Optional[PostgresEvidenceStore] = None

    async def initialize(self) -> None:
        self._pool = await asyncpg.create_pool(self._database_url, min_size=self._min_size, max_size=self._max_size)
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        self.products = PostgresProductStore(self._pool)
        self.evidence = PostgresEvidenceStore(self._pool)
        logger.info("catalog_backend=postgres")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

"""Image pool: reuse previously generated slide images across users.

An entry is served to a user at most once.  Among the entries of a
category the user has not seen, the least used (then the oldest) wins,
which spreads reuse across the pool.

``record_usage`` writes the usage row and the ``usage_count`` increment
in one database transaction.  A repeat ``(user, entry)`` pair is refused
by the ``image_usages`` unique constraint.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID, uuid4

from psycopg import AsyncCursor
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from config import settings
from src.errors import (
    DuplicateImageUsageError,
    ImagePoolEntryNotFoundError,
    InvalidCategoryError,
)
from src.images.models import ImagePoolEntry, PoolStats

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "general"

# Bucket order matters: on equal hit counts the earlier bucket wins.
TOPIC_KEYWORDS: dict[str, tuple[str, ...]] = {
    "tech": (
        "software", "api", "cloud", "data", "ai", "machine learning", "algorithm",
        "code", "platform", "infrastructure", "saas", "devops", "kubernetes",
        "microservices",
    ),
    "business": (
        "revenue", "growth", "market", "strategy", "expansion", "partnership",
        "stakeholder", "enterprise", "b2b", "sales",
    ),
    "finance": (
        "investment", "roi", "funding", "valuation", "portfolio", "fintech",
        "banking", "payment", "credit", "capital",
    ),
    "health": (
        "patient", "clinical", "healthcare", "medical", "biotech", "pharma",
        "wellness", "diagnosis", "treatment",
    ),
    "education": (
        "learning", "student", "curriculum", "training", "course", "university",
        "academic", "research", "teaching",
    ),
    "energy": (
        "renewable", "solar", "wind", "battery", "grid", "sustainability",
        "carbon", "emissions", "energy",
    ),
    "retail": (
        "consumer", "ecommerce", "shopping", "inventory", "supply chain",
        "fulfillment", "retail", "brand",
    ),
    "media": (
        "content", "streaming", "publishing", "creator", "audience", "engagement",
        "social media", "video",
    ),
    "manufacturing": (
        "production", "factory", "automation", "quality", "lean", "supply",
        "logistics", "warehouse",
    ),
}

KNOWN_BUCKETS = frozenset(TOPIC_KEYWORDS) | {DEFAULT_BUCKET}


# ── Categories ────────────────────────────────────────────────────


def derive_category(slide_type: str, text: str) -> str:
    """Map a slide type and its text to ``"{slide_type}_{bucket}"``.

    Keywords match as plain substrings of the lower-cased text.  The
    bucket with the most hits wins; zero hits everywhere gives
    ``general``.
    """
    if not slide_type or not slide_type.strip():
        raise InvalidCategoryError("slide_type must be a non-empty string")

    lowered = text.lower()
    best_bucket = DEFAULT_BUCKET
    best_hits = 0
    for bucket, keywords in TOPIC_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if keyword in lowered)
        if hits > best_hits:
            best_bucket = bucket
            best_hits = hits
    return f"{slide_type}_{best_bucket}"


def validate_category(category: str) -> str:
    slide_type, sep, bucket = category.rpartition("_")
    if not sep or not slide_type.strip() or bucket not in KNOWN_BUCKETS:
        raise InvalidCategoryError(
            f"Malformed image category {category!r}: expected '<slideType>_<bucket>' "
            f"with bucket in {sorted(KNOWN_BUCKETS)}"
        )
    return category


def _row_to_entry(row: dict[str, Any]) -> ImagePoolEntry:
    return ImagePoolEntry(
        id=row["id"],
        category=row["category"],
        storage_key=row["storage_key"],
        prompt=row["prompt"],
        width=int(row["width"]),
        height=int(row["height"]),
        usage_count=int(row["usage_count"]),
        created_at=row["created_at"],
    )


# ── Pool ──────────────────────────────────────────────────────────


class ImagePool:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def find_cached_image(self, category: str, user_id: UUID) -> ImagePoolEntry | None:
        """Least-used entry in ``category`` that ``user_id`` has never been served."""
        validate_category(category)
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT
                        p.id, p.category, p.storage_key, p.prompt,
                        p.width, p.height, p.usage_count, p.created_at
                    FROM image_pool p
                    WHERE p.category = %s
                      AND NOT EXISTS (
                          SELECT 1
                          FROM image_usages u
                          WHERE u.image_pool_id = p.id
                            AND u.user_id = %s
                      )
                    ORDER BY p.usage_count ASC, p.created_at ASC, p.seq ASC
                    LIMIT 1
                    """,
                    (category, user_id),
                )
                row = await cur.fetchone()
        if row is None:
            logger.debug("find_cached_image: miss category=%s user=%s", category, user_id)
            return None
        return _row_to_entry(row)

    async def add_to_pool(
        self,
        category: str,
        storage_key: str,
        prompt: str,
        width: int | None = None,
        height: int | None = None,
    ) -> UUID:
        """Insert a new entry.  No dedup: every generated image is its own entry."""
        validate_category(category)
        if not storage_key:
            raise ValueError("storage_key must be a non-empty string")
        effective_width = settings.image_pool_default_width if width is None else width
        effective_height = settings.image_pool_default_height if height is None else height
        if effective_width <= 0 or effective_height <= 0:
            raise ValueError(
                f"Image dimensions must be positive, got {effective_width}x{effective_height}"
            )

        entry_id = uuid4()
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO image_pool (id, category, storage_key, prompt, width, height)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (entry_id, category, storage_key, prompt, effective_width, effective_height),
                )
        logger.info("add_to_pool: entry=%s category=%s", entry_id, category)
        return entry_id

    async def record_usage(
        self,
        user_id: UUID,
        image_pool_id: UUID,
        slide_id: UUID | None = None,
    ) -> None:
        """Mark ``image_pool_id`` as served to ``user_id`` and bump its usage count.

        Both writes commit together or not at all.  Raises
        ``DuplicateImageUsageError`` if the user was already served the
        entry and ``ImagePoolEntryNotFoundError`` if the entry is gone.
        """
        async with self._pool.connection() as conn:
            try:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        await self._lock_entry(cur, image_pool_id)
                        await self._insert_usage(cur, user_id, image_pool_id, slide_id)
                        await self._increment_usage_count(cur, image_pool_id)
            except UniqueViolation as exc:
                raise DuplicateImageUsageError(user_id, image_pool_id) from exc
        logger.debug("record_usage: user=%s entry=%s slide=%s", user_id, image_pool_id, slide_id)

    async def _lock_entry(self, cur: AsyncCursor[Any], image_pool_id: UUID) -> None:
        await cur.execute(
            "SELECT id FROM image_pool WHERE id = %s FOR UPDATE",
            (image_pool_id,),
        )
        if await cur.fetchone() is None:
            raise ImagePoolEntryNotFoundError(image_pool_id)

    async def _insert_usage(
        self,
        cur: AsyncCursor[Any],
        user_id: UUID,
        image_pool_id: UUID,
        slide_id: UUID | None,
    ) -> None:
        await cur.execute(
            """
            INSERT INTO image_usages (id, user_id, image_pool_id, slide_id)
            VALUES (%s, %s, %s, %s)
            """,
            (uuid4(), user_id, image_pool_id, slide_id),
        )

    async def _increment_usage_count(self, cur: AsyncCursor[Any], image_pool_id: UUID) -> None:
        await cur.execute(
            "UPDATE image_pool SET usage_count = usage_count + 1 WHERE id = %s",
            (image_pool_id,),
        )

    async def get_pool_stats(self) -> PoolStats:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT COUNT(*) FROM image_pool")
                total_images = int((await cur.fetchone())[0])
                await cur.execute("SELECT COUNT(*) FROM image_usages")
                total_usages = int((await cur.fetchone())[0])
                await cur.execute(
                    """
                    SELECT category, COUNT(*)
                    FROM image_pool
                    GROUP BY category
                    ORDER BY category
                    """
                )
                category_rows = await cur.fetchall()
        return PoolStats(
            total_images=total_images,
            total_usages=total_usages,
            category_counts={category: int(count) for category, count in category_rows},
        )

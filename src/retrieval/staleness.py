"""Staleness tracking: which slides were built from a document's chunks.

Pure read over ``slide_sources ⋈ document_chunks ⋈ slides``.  Nothing here
mutates state or triggers regeneration; callers decide what to do with
the affected slides.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable
from uuid import UUID

from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from src.retrieval.models import AffectedSlide

logger = logging.getLogger(__name__)


def group_affected_slides(rows: Iterable[dict[str, Any]]) -> list[AffectedSlide]:
    """Collapse one row per (slide, chunk) link into one entry per slide.

    Slides keep first-encountered order; ``chunk_count`` is the number of
    distinct chunks linking to the slide.
    """
    slides: dict[UUID, dict[str, Any]] = {}
    for row in rows:
        slide_id = row["slide_id"]
        entry = slides.get(slide_id)
        if entry is None:
            entry = {
                "presentation_id": row["presentation_id"],
                "slide_title": row["slide_title"],
                "chunk_ids": set(),
            }
            slides[slide_id] = entry
        entry["chunk_ids"].add(row["chunk_id"])

    return [
        AffectedSlide(
            slide_id=slide_id,
            presentation_id=entry["presentation_id"],
            slide_title=entry["slide_title"],
            chunk_count=len(entry["chunk_ids"]),
        )
        for slide_id, entry in slides.items()
    ]


async def fetch_affected_slides(conn: AsyncConnection, document_id: UUID) -> list[AffectedSlide]:
    """Affected slides for ``document_id`` using the caller's connection.

    Used inside the indexer's transaction so the read sees the chunk set
    that is about to be replaced.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT
                ss.slide_id,
                ss.chunk_id,
                s.presentation_id,
                s.title AS slide_title
            FROM slide_sources ss
            JOIN document_chunks c ON c.id = ss.chunk_id
            JOIN slides s ON s.id = ss.slide_id
            WHERE c.document_id = %s
            ORDER BY c.chunk_index ASC, ss.created_at ASC, ss.slide_id ASC
            """,
            (document_id,),
        )
        rows = await cur.fetchall()
    return group_affected_slides(rows)


class StalenessTracker:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def find_affected_slides(self, document_id: UUID) -> list[AffectedSlide]:
        async with self._pool.connection() as conn:
            affected = await fetch_affected_slides(conn, document_id)
        logger.debug(
            "find_affected_slides: document=%s slides=%d", document_id, len(affected)
        )
        return affected

"""Approval feedback on chunks, and approval-weighted retrieval scores.

Feedback travels over the same ``slide_sources`` links the staleness
tracker reads:

- a finished deck boosts every chunk its slides cite, by
  ``approval_boost_factor * relevance`` per link (at most
  ``approval_max_boost`` per link), and counts one use per link;
- a rejected slide lowers each chunk it cites by ``approval_penalty``.

``approval_score`` stays within ``[approval_score_min, approval_score_max]``.
Weighting is opt-in at query time; plain ``VectorStore.search`` ordering
never looks at approval scores.
"""

from __future__ import annotations

import logging
from uuid import UUID

from psycopg_pool import AsyncConnectionPool

from config import settings
from src.retrieval.models import SearchResult

logger = logging.getLogger(__name__)


def compute_weighted_score(similarity: float, approval_score: float) -> float:
    """``similarity * (1 + approval_score * approval_weight)``."""
    return similarity * (1.0 + approval_score * settings.approval_weight)


def apply_approval_weights(
    results: list[SearchResult],
    min_score: float | None = None,
) -> list[SearchResult]:
    """Rescore results by approval, drop those under ``min_score``, sort descending.

    Inputs are not mutated.  Equal weighted scores keep their input order.
    """
    weighted = [
        result.model_copy(
            update={"similarity": compute_weighted_score(result.similarity, result.approval_score)}
        )
        for result in results
    ]
    if min_score is not None:
        weighted = [result for result in weighted if result.similarity >= min_score]
    weighted.sort(key=lambda result: result.similarity, reverse=True)
    return weighted


class ChunkScorer:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def boost_chunks_for_deck(self, presentation_id: UUID) -> int:
        """Boost every chunk cited by the deck's slides.  Returns the number of links applied.

        A chunk cited by several slides of the deck is boosted once per link.
        """
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        WITH boosts AS (
                            SELECT
                                ss.chunk_id,
                                SUM(LEAST(%(factor)s * ss.relevance, %(max_boost)s)) AS boost,
                                COUNT(*) AS links
                            FROM slide_sources ss
                            JOIN slides s ON s.id = ss.slide_id
                            WHERE s.presentation_id = %(presentation_id)s
                            GROUP BY ss.chunk_id
                        )
                        UPDATE document_chunks c
                        SET approval_score = LEAST(c.approval_score + b.boost, %(max_score)s),
                            usage_count = c.usage_count + b.links
                        FROM boosts b
                        WHERE c.id = b.chunk_id
                        RETURNING b.links
                        """,
                        {
                            "presentation_id": presentation_id,
                            "factor": settings.approval_boost_factor,
                            "max_boost": settings.approval_max_boost,
                            "max_score": settings.approval_score_max,
                        },
                    )
                    rows = await cur.fetchall()
        applied = sum(int(links) for (links,) in rows)
        logger.info(
            "boost_chunks_for_deck: presentation=%s links=%d chunks=%d",
            presentation_id, applied, len(rows),
        )
        return applied

    async def penalize_chunks_for_slide(self, slide_id: UUID) -> int:
        """Lower every chunk cited by a rejected slide.  Returns the number of chunks."""
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                # (slide_id, chunk_id) is the link's primary key: one penalty per chunk.
                await cur.execute(
                    """
                    UPDATE document_chunks c
                    SET approval_score = GREATEST(c.approval_score - %(penalty)s, %(min_score)s)
                    FROM slide_sources ss
                    WHERE ss.chunk_id = c.id
                      AND ss.slide_id = %(slide_id)s
                    """,
                    {
                        "slide_id": slide_id,
                        "penalty": settings.approval_penalty,
                        "min_score": settings.approval_score_min,
                    },
                )
                penalized = cur.rowcount
        logger.info("penalize_chunks_for_slide: slide=%s chunks=%d", slide_id, penalized)
        return penalized

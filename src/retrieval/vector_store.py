from __future__ import annotations

"""Chunk vector persistence and similarity search.

High-level flow (search):
1. Blank query or non-positive top_k returns early without embedding.
2. Embedding provider not configured -> keyword fallback, same min_score floor.
3. Embed query once.
4. HNSW cosine search over chunks of READY documents, optionally scoped
   to one user and/or a set of documents, thresholded at min_score.
5. Return SearchResults ordered by similarity descending, ties broken by
   chunk insertion order.

Writes (write_chunks, delete_document_chunks) run on the caller's
connection so the indexer can wrap them in its own transaction.
"""

import asyncio
import logging
import re
from time import perf_counter
from typing import Any
from uuid import UUID

from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from config import settings
from src.errors import EmbeddingDimensionError, EmbeddingError
from src.indexing.embedder import EmbeddingClient
from src.indexing.models import DocumentChunk, DocumentStatus
from src.retrieval.models import SearchResult

logger = logging.getLogger(__name__)

_LIKE_ESCAPE_RE = re.compile(r"([\\%_])")


# ── Writes ────────────────────────────────────────────────────────


async def delete_document_chunks(conn: AsyncConnection, document_id: UUID) -> int:
    """Delete every chunk of a document.  Returns the number of rows removed."""
    async with conn.cursor() as cur:
        await cur.execute("DELETE FROM document_chunks WHERE document_id = %s", (document_id,))
        return cur.rowcount


async def write_chunks(
    conn: AsyncConnection,
    document_id: UUID,
    chunks: list[DocumentChunk],
    vectors: list[list[float]],
    *,
    dimensions: int | None = None,
) -> None:
    """Insert a document's chunk set with one vector per chunk.

    Validates counts and dimensionality before writing anything, so a
    bad embedding response never reaches the table.
    """
    expected_dimensions = dimensions or settings.embedding_dimensions
    if len(vectors) != len(chunks):
        raise EmbeddingError(
            "Embedding count mismatch: "
            f"expected {len(chunks)}, got {len(vectors)}."
        )
    for vector in vectors:
        if len(vector) != expected_dimensions:
            raise EmbeddingDimensionError(expected_dimensions, len(vector))
    if not chunks:
        return

    params_list = []
    for chunk, vector in zip(chunks, vectors):
        chunk.document_id = document_id
        chunk.embedding = vector
        params_list.append(
            {
                "id": chunk.id,
                "document_id": document_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "heading": chunk.heading,
                "heading_level": chunk.heading_level,
                "metadata": Jsonb(chunk.metadata.to_dict()),
                "embedding": vector,
            }
        )

    async with conn.cursor() as cur:
        # executemany: one prepared statement, rows streamed in chunk_index
        # order so seq follows emission order.
        await cur.executemany(
            """
            INSERT INTO document_chunks (
                id, document_id, chunk_index, content, heading, heading_level,
                metadata, embedding
            )
            VALUES (
                %(id)s, %(document_id)s, %(chunk_index)s, %(content)s, %(heading)s,
                %(heading_level)s, %(metadata)s, %(embedding)s::vector
            )
            """,
            params_list,
        )


# ── Helpers ───────────────────────────────────────────────────────


def _scope_clauses(
    user_id: UUID | None,
    document_ids: list[UUID] | None,
) -> tuple[list[str], dict[str, Any]]:
    clauses = ["d.status = %(ready)s"]
    params: dict[str, Any] = {"ready": DocumentStatus.READY.value}
    if user_id is not None:
        clauses.append("d.user_id = %(user_id)s")
        params["user_id"] = user_id
    if document_ids is not None:
        clauses.append("c.document_id = ANY(%(document_ids)s)")
        params["document_ids"] = list(document_ids)
    return clauses, params


def _row_to_search_result(row: dict[str, Any], similarity: float) -> SearchResult:
    return SearchResult(
        chunk_id=row["id"],
        document_id=row["document_id"],
        document_title=row["document_title"] or "",
        content=row["content"],
        heading=row["heading"],
        heading_level=int(row["heading_level"]),
        metadata=dict(row["metadata"] or {}),
        similarity=float(similarity),
        approval_score=float(row.get("approval_score") or 0.0),
    )


def extract_keyword_terms(query: str) -> list[str]:
    """Lower-cased query words long enough to be meaningful, in query order."""
    terms = [
        word
        for word in query.lower().split()
        if len(word) >= settings.keyword_search_min_term_length
    ]
    return terms[: settings.keyword_search_max_terms]


def _like_pattern(term: str) -> str:
    return "%" + _LIKE_ESCAPE_RE.sub(r"\\\1", term) + "%"


def keyword_similarity(content: str, terms: list[str]) -> float:
    """Fraction of ``terms`` contained in ``content`` (case-insensitive)."""
    if not terms:
        return 0.0
    lowered = content.lower()
    matched = sum(1 for term in terms if term in lowered)
    return matched / len(terms)


# ── Search ────────────────────────────────────────────────────────


class VectorStore:
    """Similarity search over indexed chunk embeddings.

    Preconditions:
    - the pool's connections have pgvector registered
    - schema has already been initialized
    """

    def __init__(self, pool: AsyncConnectionPool, embedder: EmbeddingClient) -> None:
        self._pool = pool
        self._embedder = embedder

    async def search(
        self,
        query: str,
        top_k: int | None = None,
        min_score: float | None = None,
        *,
        user_id: UUID | None = None,
        document_ids: list[UUID] | None = None,
    ) -> list[SearchResult]:
        """Return up to ``top_k`` chunks with similarity >= ``min_score``.

        Ordered by similarity descending; equal scores keep chunk
        insertion order.  An empty index returns ``[]``.
        """
        effective_top_k = settings.retrieval_top_k if top_k is None else top_k
        floor = settings.retrieval_similarity_floor if min_score is None else min_score
        if effective_top_k <= 0 or not query.strip():
            return []
        if document_ids is not None and not document_ids:
            return []

        if not self._embedder.is_available:
            logger.warning("search: embedding provider not configured, using keyword fallback")
            keyword_results = await self.search_by_keywords(
                query, effective_top_k, user_id=user_id, document_ids=document_ids
            )
            # Results are sorted descending, so filtering after the cap drops only the tail.
            return [result for result in keyword_results if result.similarity >= floor]

        started = perf_counter()
        query_vector = await self._embedder.embed(query)
        embed_ms = (perf_counter() - started) * 1000.0

        results = await asyncio.wait_for(
            self._run_hnsw_search(query_vector, effective_top_k, floor, user_id, document_ids),
            timeout=settings.retrieval_timeout_seconds,
        )
        logger.info(
            "search: %d results (top_k=%d, min_score=%.2f, embed=%.0fms, total=%.0fms)",
            len(results), effective_top_k, floor, embed_ms,
            (perf_counter() - started) * 1000.0,
        )
        return results

    async def _run_hnsw_search(
        self,
        query_vector: list[float],
        top_k: int,
        min_score: float,
        user_id: UUID | None,
        document_ids: list[UUID] | None,
    ) -> list[SearchResult]:
        clauses, params = _scope_clauses(user_id, document_ids)
        params.update(
            {
                "query_vector": query_vector,
                "max_distance": 1.0 - min_score,
                "top_k": top_k,
            }
        )
        where = " AND ".join(clauses)

        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    # pgvector recall/speed control; set transaction-locally.
                    # SET LOCAL doesn't accept bind placeholders in psycopg, so use
                    # set_config(name, value, is_local=true) to stay parameterized.
                    await cur.execute(
                        "SELECT set_config('hnsw.ef_search', %s, true)",
                        (str(max(settings.retrieval_hnsw_ef_search, top_k)),),
                    )
                    await cur.execute(
                        f"""
                        SELECT
                            c.id, c.document_id, c.content, c.heading,
                            c.heading_level, c.metadata, c.seq, c.approval_score,
                            d.title AS document_title,
                            (c.embedding <=> %(query_vector)s::vector) AS distance
                        FROM document_chunks c
                        JOIN documents d ON d.id = c.document_id
                        WHERE {where}
                          AND (c.embedding <=> %(query_vector)s::vector) <= %(max_distance)s
                        ORDER BY distance ASC, c.seq ASC
                        LIMIT %(top_k)s
                        """,
                        params,
                    )
                    rows = await cur.fetchall()

        return [
            _row_to_search_result(row, 1.0 - float(row["distance"]))
            for row in rows
        ]

    async def search_by_keywords(
        self,
        query: str,
        top_k: int | None = None,
        *,
        user_id: UUID | None = None,
        document_ids: list[UUID] | None = None,
    ) -> list[SearchResult]:
        """Keyword fallback used when no embedding provider is configured.

        Similarity is the fraction of query terms found in the chunk;
        chunks matching no term are excluded.
        """
        effective_top_k = settings.retrieval_top_k if top_k is None else top_k
        terms = extract_keyword_terms(query)
        if not terms or effective_top_k <= 0:
            return []

        clauses, params = _scope_clauses(user_id, document_ids)
        params["patterns"] = [_like_pattern(term) for term in terms]
        where = " AND ".join(clauses)

        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    f"""
                    SELECT
                        c.id, c.document_id, c.content, c.heading,
                        c.heading_level, c.metadata, c.seq, c.approval_score,
                        d.title AS document_title
                    FROM document_chunks c
                    JOIN documents d ON d.id = c.document_id
                    WHERE {where}
                      AND c.content ILIKE ANY(%(patterns)s)
                    ORDER BY c.seq ASC
                    """,
                    params,
                )
                rows = await cur.fetchall()

        scored = [(keyword_similarity(row["content"], terms), row) for row in rows]
        scored = [(score, row) for score, row in scored if score > 0]
        # sort() is stable, so equal scores keep seq order.
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [_row_to_search_result(row, score) for score, row in scored[:effective_top_k]]

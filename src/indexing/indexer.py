from __future__ import annotations

# ────────────────────────────────────────────────────────────────
# indexer.py - Entry point for the indexing layer
#
# Public interface:
#   Indexer.index_document(document_id, text) - chunk, embed and store
#       one document's extracted text
#   content_hash(text) - whitespace-insensitive SHA-256 of a document
#
# Pipeline phases (index_document):
#   Phase 1 - Dedup check:
#       Read the document row (lightweight, no lock).  If the stored
#       content_hash matches and the document is READY, skip (no-op).
#
#   Phase 2 - Chunk + embed:
#       status PARSING -> chunk_by_headings() -> status EMBEDDING ->
#       batch_embed() over every chunk.  See embedder.py header for
#       concurrency and failure semantics.
#
#   Phase 3 - Transactional DB writes:
#       Inside a single Postgres transaction, lock the document row
#       with FOR UPDATE, collect the slides that cite the old chunk set
#       (staleness), delete the old chunks, bulk-insert the new ones
#       with their vectors and mark the document READY.
#
# Failure handling:
#   Empty text, an embedding failure or a DB error marks the document
#   ERROR with the error message and raises DocumentProcessingError.
#   Phase 3's transaction ensures a document is never left with a
#   partial chunk set; the previous chunks stay until the new set is
#   fully written.
# ────────────────────────────────────────────────────────────────

import hashlib
import logging
import re
import time
from uuid import UUID

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from src.errors import DocumentNotFoundError, DocumentProcessingError, EmptyDocumentError
from src.indexing.chunker import chunk_by_headings
from src.indexing.embedder import EmbeddingClient
from src.indexing.models import ChunkOptions, DocumentChunk, DocumentStatus, IndexResult
from src.retrieval.models import AffectedSlide
from src.retrieval.staleness import fetch_affected_slides
from src.retrieval.vector_store import delete_document_chunks, write_chunks

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def content_hash(text: str) -> str:
    """SHA-256 hex digest of ``text`` with whitespace runs collapsed."""
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class Indexer:
    def __init__(
        self,
        pool: AsyncConnectionPool,
        embedder: EmbeddingClient,
        *,
        chunk_options: ChunkOptions | None = None,
    ) -> None:
        self._pool = pool
        self._embedder = embedder
        self._chunk_options = chunk_options

    async def index_document(self, document_id: UUID, text: str) -> IndexResult:
        """Chunk, embed and store a document's extracted text atomically."""
        started = time.perf_counter()
        existing = await self._load_document(document_id)
        if existing is None:
            raise DocumentNotFoundError(document_id)

        text_hash = content_hash(text)
        if existing["content_hash"] == text_hash and existing["status"] == DocumentStatus.READY.value:
            logger.info("index_document: %s unchanged, skipping", document_id)
            return IndexResult(
                document_id=document_id,
                chunk_count=int(existing["chunk_count"]),
                content_hash=text_hash,
                skipped=True,
            )

        try:
            if not text.strip():
                raise EmptyDocumentError("Document contains no extractable text")

            await self._set_status(document_id, DocumentStatus.PARSING)
            chunks = chunk_by_headings(text, self._chunk_options)

            await self._set_status(document_id, DocumentStatus.EMBEDDING)
            vectors = await self._embedder.batch_embed([chunk.content for chunk in chunks])

            affected = await self._replace_chunks(document_id, chunks, vectors, text_hash)
        except Exception as exc:
            logger.warning("index_document: %s failed: %s", document_id, exc)
            try:
                await self._mark_error(document_id, str(exc))
            except Exception:
                logger.exception("index_document: could not mark %s as ERROR", document_id)
            raise DocumentProcessingError(document_id, str(exc)) from exc

        logger.info(
            "index_document: %s indexed chunks=%d affected_slides=%d in %.2fs",
            document_id, len(chunks), len(affected), time.perf_counter() - started,
        )
        return IndexResult(
            document_id=document_id,
            chunk_count=len(chunks),
            content_hash=text_hash,
            affected_slides=affected,
        )

    async def _load_document(self, document_id: UUID) -> dict[str, object] | None:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT status, content_hash, chunk_count
                    FROM documents
                    WHERE id = %s
                    """,
                    (document_id,),
                )
                return await cur.fetchone()

    async def _set_status(self, document_id: UUID, status: DocumentStatus) -> None:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "UPDATE documents SET status = %s WHERE id = %s",
                    (status.value, document_id),
                )

    async def _mark_error(self, document_id: UUID, message: str) -> None:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE documents
                    SET status = %s, error_message = %s
                    WHERE id = %s
                    """,
                    (DocumentStatus.ERROR.value, message, document_id),
                )

    async def _replace_chunks(
        self,
        document_id: UUID,
        chunks: list[DocumentChunk],
        vectors: list[list[float]],
        text_hash: str,
    ) -> list[AffectedSlide]:
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(
                        "SELECT id FROM documents WHERE id = %s FOR UPDATE",
                        (document_id,),
                    )
                    if await cur.fetchone() is None:
                        raise DocumentNotFoundError(document_id)

                # Must run before the delete: slide_sources rows cascade with the chunks.
                affected = await fetch_affected_slides(conn, document_id)
                await delete_document_chunks(conn, document_id)
                await write_chunks(conn, document_id, chunks, vectors)

                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        UPDATE documents
                        SET status = %s,
                            chunk_count = %s,
                            content_hash = %s,
                            processed_at = NOW(),
                            error_message = NULL
                        WHERE id = %s
                        """,
                        (DocumentStatus.READY.value, len(chunks), text_hash, document_id),
                    )
        return affected

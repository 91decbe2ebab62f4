"""KnowledgeBaseEngine - composition root for the knowledge-base core.

Owns the Postgres connection pool and builds every component with it:

  1. Indexer (chunk → embed → store).
  2. VectorStore search, optionally approval-weighted, then the Reranker.
  3. StalenessTracker.
  4. ChunkScorer (approval feedback).
  5. ImagePool.

There is no module-level state: two engines in one process share
nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from uuid import UUID

from pgvector.psycopg import register_vector_async
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from config import settings
from src.images.image_pool import ImagePool
from src.indexing.embedder import EmbeddingClient
from src.indexing.indexer import Indexer
from src.indexing.models import ChunkOptions, IndexResult
from src.indexing.schema import init_schema
from src.orchestration.models import Enhanced
from src.orchestration.reranker import Reranker
from src.retrieval.chunk_scoring import ChunkScorer, apply_approval_weights
from src.retrieval.models import AffectedSlide, SearchResult
from src.retrieval.staleness import StalenessTracker
from src.retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)


async def _configure_connection(conn: AsyncConnection) -> None:
    # pgvector's register_vector_async must be called per-connection
    # so psycopg knows how to encode/decode vector columns.
    await register_vector_async(conn)


class KnowledgeBaseEngine:
    """Wires the knowledge-base components around one connection pool.

    Owns:
      - Connection pool lifecycle and schema initialisation.
      - Candidate widening before reranking.
      - Opt-in approval weighting of candidates.

    Does NOT own:
      - Chunking, embedding or storage logic (``src.indexing``).
      - Search SQL (``vector_store.py``), reranking (``reranker.py``).
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingClient | None = None,
        reranker: Reranker | None = None,
        chunk_options: ChunkOptions | None = None,
    ) -> None:
        self._pool: AsyncConnectionPool | None = None
        self._embedder = embedder or EmbeddingClient()
        self._reranker = reranker or Reranker()
        self._chunk_options = chunk_options
        self._start_lock = asyncio.Lock()

        self._indexer: Indexer | None = None
        self._vector_store: VectorStore | None = None
        self._staleness: StalenessTracker | None = None
        self._image_pool: ImagePool | None = None
        self._chunk_scorer: ChunkScorer | None = None

    # ── Pool lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        """Initialise the schema and open the connection pool.

        Concurrent first calls share one pool: the second waits on the lock
        and returns once the first has attached.
        """
        if self._pool is not None:
            return
        async with self._start_lock:
            if self._pool is None:
                await self._open_pool()

    async def _open_pool(self) -> None:
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for the knowledge base.")

        # The vector type must exist before pooled connections register it.
        conn = await AsyncConnection.connect(settings.database_url, autocommit=True)
        try:
            await init_schema(conn)
        finally:
            await conn.close()

        pool = AsyncConnectionPool(
            conninfo=settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            open=False,
            kwargs={"autocommit": True},
            configure=_configure_connection,
        )
        await pool.open()
        self._attach(pool)
        logger.info(
            "knowledge base started (pool %d-%d)",
            settings.db_pool_min_size, settings.db_pool_max_size,
        )

    def _attach(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool
        self._indexer = Indexer(pool, self._embedder, chunk_options=self._chunk_options)
        self._vector_store = VectorStore(pool, self._embedder)
        self._staleness = StalenessTracker(pool)
        self._image_pool = ImagePool(pool)
        self._chunk_scorer = ChunkScorer(pool)

    async def stop(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._indexer = None
            self._vector_store = None
            self._staleness = None
            self._image_pool = None
            self._chunk_scorer = None

    async def _ensure_started(self) -> None:
        if self._pool is None:
            await self.start()

    # ── Components ────────────────────────────────────────────

    @property
    def image_pool(self) -> ImagePool:
        if self._image_pool is None:
            raise RuntimeError("KnowledgeBaseEngine.start() must be called first.")
        return self._image_pool

    # ── Entry points ──────────────────────────────────────────

    async def index_document(self, document_id: UUID, text: str) -> IndexResult:
        await self._ensure_started()
        assert self._indexer is not None
        return await self._indexer.index_document(document_id, text)

    async def find_affected_slides(self, document_id: UUID) -> list[AffectedSlide]:
        await self._ensure_started()
        assert self._staleness is not None
        return await self._staleness.find_affected_slides(document_id)

    async def boost_chunks_for_deck(self, presentation_id: UUID) -> int:
        await self._ensure_started()
        assert self._chunk_scorer is not None
        return await self._chunk_scorer.boost_chunks_for_deck(presentation_id)

    async def penalize_chunks_for_slide(self, slide_id: UUID) -> int:
        await self._ensure_started()
        assert self._chunk_scorer is not None
        return await self._chunk_scorer.penalize_chunks_for_slide(slide_id)

    async def search(
        self,
        query: str,
        *,
        user_id: UUID | None = None,
        document_ids: list[UUID] | None = None,
        top_k: int | None = None,
        min_score: float | None = None,
        rerank: bool = True,
        weight_by_approval: bool = False,
        timeout: float | None = None,
    ) -> list[SearchResult]:
        """Vector search, then reranking over a wider candidate set.

        With ``weight_by_approval`` the candidates are rescored by
        ``apply_approval_weights`` (and re-filtered at ``min_score``)
        before reranking.

        Reranker failures never surface: the worst case is the vector
        store's own ordering, trimmed to ``top_k``.
        """
        await self._ensure_started()
        assert self._vector_store is not None
        effective_top_k = settings.retrieval_top_k if top_k is None else top_k
        if effective_top_k <= 0:
            return []
        use_reranker = rerank and self._reranker.enabled
        candidate_k = (
            effective_top_k * max(1, settings.reranker_candidate_multiplier)
            if use_reranker
            else effective_top_k
        )

        started = time.perf_counter()
        candidates = await asyncio.wait_for(
            self._vector_store.search(
                query,
                candidate_k,
                min_score,
                user_id=user_id,
                document_ids=document_ids,
            ),
            timeout=timeout or settings.retrieval_timeout_seconds,
        )
        if weight_by_approval:
            floor = settings.retrieval_similarity_floor if min_score is None else min_score
            candidates = apply_approval_weights(candidates, floor)
        if not use_reranker:
            return candidates[:effective_top_k]

        outcome = await self._reranker.rerank_with_outcome(query, candidates, effective_top_k)
        logger.info(
            "search: %d candidates -> %d results (%s) in %.0fms",
            len(candidates), min(len(outcome.results), effective_top_k), outcome.kind,
            (time.perf_counter() - started) * 1000.0,
        )
        if isinstance(outcome, Enhanced):
            return outcome.results
        return outcome.results[:effective_top_k]

from __future__ import annotations

import asyncio
import logging
from typing import Any

from openai import AsyncOpenAI, OpenAIError

from config import settings
from src.errors import EmbeddingDimensionError, EmbeddingError

# ────────────────────────────────────────────────────────────────
# embedder.py - Embedding client for chunks and queries
#
# Responsibilities:
#   1. batch_embed() - convert a list of texts into vectors, same
#      order and length as the input
#   2. embed()       - convert one query string into a vector
#   3. is_available  - whether an embedding provider is configured
#
# Concurrency model (batch_embed):
#   Texts are split into batches of EMBEDDING_BATCH_SIZE (default 100;
#   Voyage-style providers need 50) and dispatched concurrently with
#   asyncio, at most EMBEDDING_MAX_WORKERS calls in flight at once.
#
# Failure handling:
#   If any single batch raises (timeout, 429, network error, etc.),
#   the remaining batches are cancelled and the whole batch_embed()
#   call fails with EmbeddingError.  No partial results are returned.
#   Embedding calls have no remote side effects, so callers may retry;
#   the OpenAI SDK already retries transient failures with backoff.
#
# Input limits:
#   Texts longer than EMBEDDING_MAX_INPUT_TOKENS are truncated
#   token-wise before being sent.  The chunk content stored in the
#   database is never modified.
# ────────────────────────────────────────────────────────────────

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Batched embedding calls against an OpenAI-compatible endpoint.

    One instance per pipeline; pass ``client`` to use a preconfigured
    (or mocked) ``AsyncOpenAI``.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        *,
        model: str | None = None,
        dimensions: int | None = None,
        batch_size: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.batch_size = max(1, batch_size or settings.embedding_batch_size)
        self.max_workers = max(1, max_workers or settings.embedding_max_workers)
        self._encoding: Any | None = None

    @property
    def is_available(self) -> bool:
        return self._client is not None or bool(settings.embedding_api_key)

    # build the SDK client on first use; timeout and retries come from config

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.embedding_api_key:
                raise EmbeddingError("EMBEDDING_API_KEY is required for embedding calls.")
            self._client = AsyncOpenAI(
                api_key=settings.embedding_api_key,
                base_url=settings.embedding_base_url,
                timeout=settings.embedding_timeout_seconds,
                max_retries=settings.embedding_max_retries,
            )
        return self._client

    def _get_encoding(self) -> Any:
        if self._encoding is None:
            import tiktoken
            self._encoding = tiktoken.get_encoding(settings.embedding_tokenizer_name)
        return self._encoding

    def _prepare_input(self, text: str) -> str:
        limit = settings.embedding_max_input_tokens
        # A token is at least one UTF-8 byte, so short texts skip the tokenizer.
        if len(text.encode("utf-8")) <= limit:
            return text
        encoding = self._get_encoding()
        tokens = encoding.encode(text)
        if len(tokens) <= limit:
            return text
        logger.debug("embedder: truncating input from %d to %d tokens", len(tokens), limit)
        return encoding.decode(tokens[:limit])

    async def _embed_single_batch(self, batch: list[str]) -> list[list[float]]:
        client = self._get_client()
        try:
            response = await client.embeddings.create(
                model=self.model,
                input=[self._prepare_input(text) for text in batch],
            )
        except OpenAIError as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        # Providers may return items out of order; index is authoritative.
        items = sorted(response.data, key=lambda item: item.index)
        embeddings = [list(item.embedding) for item in items]
        if len(embeddings) != len(batch):
            raise EmbeddingError(
                "Embedding response size mismatch: "
                f"expected {len(batch)} vectors, got {len(embeddings)}"
            )
        for vector in embeddings:
            if len(vector) != self.dimensions:
                raise EmbeddingDimensionError(self.dimensions, len(vector))
        return embeddings

    async def batch_embed(self, texts: list[str]) -> list[list[float]]:
        """Convert texts to vectors via concurrent API batches."""
        if not texts:
            return []

        # Fast path: if everything fits in one batch, skip the task overhead.
        if len(texts) <= self.batch_size:
            return await self._embed_single_batch(texts)

        batches = [
            texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)
        ]
        logger.debug(
            "batch_embed: dispatching %d texts in %d batches (size=%d, workers=%d)",
            len(texts), len(batches), self.batch_size, self.max_workers,
        )

        semaphore = asyncio.Semaphore(self.max_workers)

        async def _bounded(batch: list[str]) -> list[list[float]]:
            async with semaphore:
                return await self._embed_single_batch(batch)

        tasks = [asyncio.create_task(_bounded(batch)) for batch in batches]
        try:
            # gather() returns results in task order regardless of completion order.
            results = await asyncio.gather(*tasks)
        except Exception:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        all_embeddings: list[list[float]] = []
        for vectors in results:
            all_embeddings.extend(vectors)
        return all_embeddings

    async def embed(self, text: str) -> list[float]:
        """Embed a single retrieval query string."""
        return (await self.batch_embed([text]))[0]

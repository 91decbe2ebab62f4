"""Modular reranker abstraction.

Supports ZeroEntropy (zerank-2), Cohere, Jina (HTTP API), and a disabled
("none") provider.  Every provider response is reduced to a plain
``{"results": [{"index", "relevance_score"}]}`` payload and run through
``parse_rerank_payload`` before it is trusted.

Design notes:
  - Provider SDKs are imported lazily (inside each function) so the
    system starts without installing unused provider packages.
  - Reranking is fail-open: a disabled provider, a timeout, an HTTP
    error or a rejected payload all produce ``Unchanged`` carrying the
    original results in their original order.  Nothing is raised to
    the caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
import warnings
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from config import settings
from src.orchestration.models import (
    Enhanced,
    ParsedRerank,
    ParseOutcome,
    RejectedRerank,
    RerankOutcome,
    RerankPayload,
    Unchanged,
)
from src.retrieval.models import SearchResult

logger = logging.getLogger(__name__)

_ProviderCall = Callable[[str, list[str], int], Awaitable[Any]]


# ── Payload parsing ───────────────────────────────────────────────


def parse_rerank_payload(payload: Any, document_count: int) -> ParseOutcome:
    """Validate a provider payload against the documents that were sent.

    Rejects payloads that are not shaped like ``{"results": [...]}``,
    reference an index outside ``range(document_count)``, repeat an index,
    or carry a non-finite score.
    """
    try:
        parsed = RerankPayload.model_validate(payload)
    except ValidationError as exc:
        return RejectedRerank(reason=f"malformed payload: {exc.error_count()} validation error(s)")

    seen: set[int] = set()
    for result in parsed.results:
        if result.index >= document_count:
            return RejectedRerank(
                reason=f"index {result.index} out of range for {document_count} documents"
            )
        if result.index in seen:
            return RejectedRerank(reason=f"duplicate index {result.index}")
        if not math.isfinite(result.relevance_score):
            return RejectedRerank(reason=f"non-finite score for index {result.index}")
        seen.add(result.index)

    return ParsedRerank(results=parsed.results)


def apply_rerank(
    results: list[SearchResult],
    parsed: ParsedRerank,
    top_k: int,
    min_score: float,
) -> list[SearchResult]:
    """Keep entries scoring >= ``min_score``, rescored and sorted, capped at ``top_k``."""
    kept = [
        results[item.index].model_copy(update={"similarity": item.relevance_score})
        for item in parsed.results
        if item.relevance_score >= min_score
    ]
    # sort() is stable: equal scores keep the provider's order.
    kept.sort(key=lambda result: result.similarity, reverse=True)
    return kept[: max(0, top_k)]


def _sdk_payload(response: Any) -> dict[str, Any]:
    """Reduce an SDK response object to the plain payload shape."""
    results = getattr(response, "results", None)
    if results is None:
        return {}
    return {
        "results": [
            {
                "index": getattr(item, "index", None),
                "relevance_score": getattr(item, "relevance_score", None),
            }
            for item in results
        ]
    }


# ── Reranker ──────────────────────────────────────────────────────


class Reranker:
    """Second-pass relevance reordering of search results.

    Providers are selected by ``provider`` (defaults to config).  The
    reranker is disabled when the provider is ``"none"`` or no API key
    is configured.
    """

    def __init__(
        self,
        *,
        provider: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        min_score: float | None = None,
    ) -> None:
        self.provider = (provider or settings.reranker_provider).lower()
        self.api_key = api_key if api_key is not None else settings.reranker_api_key
        self.model = model or settings.reranker_model
        self.timeout_seconds = timeout_seconds or settings.reranker_timeout_seconds
        self.min_score = settings.reranker_min_score if min_score is None else min_score

    @property
    def enabled(self) -> bool:
        return self.provider != "none" and bool(self.api_key)

    async def rerank(
        self,
        query: str,
        results: list[SearchResult],
        top_k: int,
        min_score: float | None = None,
    ) -> list[SearchResult]:
        """Rerank *results* against *query*; original *results* on any failure."""
        outcome = await self.rerank_with_outcome(query, results, top_k, min_score)
        return outcome.results

    async def rerank_with_outcome(
        self,
        query: str,
        results: list[SearchResult],
        top_k: int,
        min_score: float | None = None,
    ) -> RerankOutcome:
        if not self.enabled:
            return Unchanged(results=results, reason="disabled")
        if len(results) <= 1:
            return Unchanged(results=results, reason="too_few_results")

        dispatch: dict[str, _ProviderCall] = {
            "zeroentropy": self._rerank_zeroentropy,
            "cohere": self._rerank_cohere,
            "jina": self._rerank_jina,
        }
        handler = dispatch.get(self.provider)
        if handler is None:
            return self._fall_back(
                results,
                "unknown_provider",
                f"Unknown reranker_provider '{self.provider}', falling back to passthrough.",
            )

        effective_min_score = self.min_score if min_score is None else min_score
        documents = [result.content for result in results]
        top_n = min(top_k, len(results))
        logger.info(
            "rerank: %d passages sent to '%s' (top_n=%d, query=%r)",
            len(documents), self.provider, top_n, query[:80],
        )

        try:
            payload = await asyncio.wait_for(
                handler(query, documents, top_n),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._fall_back(
                results,
                "timeout",
                f"Reranker '{self.provider}' timed out after {self.timeout_seconds}s, "
                "falling back to passthrough.",
            )
        except Exception as exc:
            return self._fall_back(
                results,
                "provider_error",
                f"Reranker '{self.provider}' failed ({exc!r}), falling back to passthrough.",
            )

        parsed = parse_rerank_payload(payload, len(documents))
        if isinstance(parsed, RejectedRerank):
            return self._fall_back(
                results,
                f"rejected_payload: {parsed.reason}",
                f"Reranker '{self.provider}' returned an unusable payload "
                f"({parsed.reason}), falling back to passthrough.",
            )

        reranked = apply_rerank(results, parsed, top_n, effective_min_score)
        logger.debug(
            "rerank: kept %d of %d results (min_score=%.2f)",
            len(reranked), len(results), effective_min_score,
        )
        return Enhanced(results=reranked, provider=self.provider)

    def _fall_back(self, results: list[SearchResult], reason: str, message: str) -> Unchanged:
        logger.warning(message)
        warnings.warn(message, stacklevel=3)
        return Unchanged(results=results, reason=reason)

    # ── ZeroEntropy ───────────────────────────────────────────────

    async def _rerank_zeroentropy(self, query: str, documents: list[str], top_n: int) -> Any:
        """ZeroEntropy zerank-2 via ``AsyncZeroEntropy().models.rerank()``.

        ZeroEntropy returns calibrated 0–1 scores.
        """
        from zeroentropy import AsyncZeroEntropy

        client = AsyncZeroEntropy(api_key=self.api_key)
        response = await client.models.rerank(
            model=self.model,
            query=query,
            documents=documents,
            top_n=top_n,
        )
        return _sdk_payload(response)

    # ── Cohere ────────────────────────────────────────────────────

    async def _rerank_cohere(self, query: str, documents: list[str], top_n: int) -> Any:
        import cohere

        client = cohere.AsyncClientV2(api_key=self.api_key)
        response = await client.rerank(
            model=self.model,
            query=query,
            documents=documents,
            top_n=top_n,
        )
        return _sdk_payload(response)

    # ── Jina ──────────────────────────────────────────────────────

    async def _rerank_jina(self, query: str, documents: list[str], top_n: int) -> Any:
        """Jina-compatible HTTP rerank endpoint (``settings.reranker_endpoint``)."""
        import httpx

        payload = {
            "model": self.model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            resp = await client.post(settings.reranker_endpoint, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()

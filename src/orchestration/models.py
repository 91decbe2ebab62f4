"""Reranking data contracts.

Provider payloads go through an explicit parse step that yields either
``ParsedRerank`` or ``RejectedRerank``; the reranker then reports its
outcome as ``Enhanced`` or ``Unchanged``.  Callers inspect ``kind`` (or
use ``isinstance``) instead of catching exceptions.
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, Field

from src.retrieval.models import SearchResult


# ── Provider payload ──────────────────────────────────────────────


class RerankResult(BaseModel):
    """Single reranked result from any provider."""

    index: int = Field(ge=0)  # Position in the submitted documents list.
    relevance_score: float


class RerankPayload(BaseModel):
    """``{"results": [{"index", "relevance_score"}]}`` as returned by providers."""

    results: list[RerankResult]


class ParsedRerank(BaseModel):
    kind: Literal["parsed"] = "parsed"
    results: list[RerankResult]


class RejectedRerank(BaseModel):
    kind: Literal["rejected"] = "rejected"
    reason: str


ParseOutcome = Union[ParsedRerank, RejectedRerank]


# ── Rerank outcome ────────────────────────────────────────────────


class Enhanced(BaseModel):
    """Reranking succeeded: filtered, rescored and reordered results."""

    kind: Literal["enhanced"] = "enhanced"
    results: list[SearchResult]
    provider: str


class Unchanged(BaseModel):
    """Reranking did not apply: the input results, untouched."""

    kind: Literal["unchanged"] = "unchanged"
    results: list[SearchResult]
    # "disabled" | "too_few_results" | "timeout" | "provider_error" |
    # "unknown_provider" | "rejected_payload: ..."
    reason: str


RerankOutcome = Union[Enhanced, Unchanged]

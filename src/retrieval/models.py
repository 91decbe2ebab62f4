from __future__ import annotations

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class SearchResult(BaseModel):
    """A chunk returned by search, consumed by generation as context."""

    # Identity
    chunk_id: UUID
    document_id: UUID
    document_title: str

    # Content
    content: str
    heading: str | None
    heading_level: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Scoring.  Cosine similarity from the vector store, keyword match
    # ratio from the keyword fallback, or relevance score after reranking.
    similarity: float
    # Accumulated approval feedback for the chunk (see chunk_scoring.py).
    approval_score: float = 0.0

    @property
    def section_path(self) -> list[str]:
        """Ancestor heading titles stored with the chunk (empty when absent)."""
        return list(self.metadata.get("sectionPath") or [])


class AffectedSlide(BaseModel):
    """A slide citing one or more chunks of a changed document."""

    slide_id: UUID
    presentation_id: UUID
    slide_title: str | None
    chunk_count: int

# models.py defines the in-memory data structures the indexing layer passes around
# no database access or business logic - just shape definitions

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from config import settings
from src.errors import InvalidChunkOptionsError

if TYPE_CHECKING:
    from src.retrieval.models import AffectedSlide


# document lifecycle as stored in documents.status
# UPLOADED -> PARSING -> EMBEDDING -> READY, or ERROR from any step
class DocumentStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    EMBEDDING = "EMBEDDING"
    READY = "READY"
    ERROR = "ERROR"


# sizes are in characters; defaults come from config
@dataclass(frozen=True)
class ChunkOptions:
    max_chunk_size: int = field(default_factory=lambda: settings.chunk_max_size)
    min_chunk_size: int = field(default_factory=lambda: settings.chunk_min_size)
    overlap_size: int = field(default_factory=lambda: settings.chunk_overlap_size)

    def __post_init__(self) -> None:
        if self.max_chunk_size <= 0:
            raise InvalidChunkOptionsError(
                f"max_chunk_size must be positive, got {self.max_chunk_size}"
            )
        if self.min_chunk_size < 0:
            raise InvalidChunkOptionsError(
                f"min_chunk_size must not be negative, got {self.min_chunk_size}"
            )
        if self.overlap_size < 0:
            raise InvalidChunkOptionsError(
                f"overlap_size must not be negative, got {self.overlap_size}"
            )
        if self.min_chunk_size > self.max_chunk_size:
            raise InvalidChunkOptionsError(
                f"min_chunk_size ({self.min_chunk_size}) exceeds "
                f"max_chunk_size ({self.max_chunk_size})"
            )
        # overlap is prepended to every chunk after the first, so it must
        # leave at least half of each chunk for new content.
        if self.overlap_size > self.max_chunk_size // 2:
            raise InvalidChunkOptionsError(
                f"overlap_size ({self.overlap_size}) must be at most half of "
                f"max_chunk_size ({self.max_chunk_size})"
            )


@dataclass
class ChunkMetadata:
    section_path: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {"sectionPath": list(self.section_path)}


# central object, one chunk as it flows from the chunker to the chunks table
# document_id is None until the indexer assigns it before insert
@dataclass
class DocumentChunk:
    content: str
    heading: str | None = None
    heading_level: int = 0
    chunk_index: int = 0
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    id: UUID = field(default_factory=uuid4)
    document_id: UUID | None = None
    embedding: list[float] | None = None


@dataclass
class IndexResult:
    document_id: UUID
    chunk_count: int
    content_hash: str
    skipped: bool = False
    # slides citing chunks of the previous version of this document
    affected_slides: list[AffectedSlide] = field(default_factory=list)

"""Exception types for the knowledge-base core.

Input errors subclass ``ValueError`` and are raised before any work is
done.  Remote and consistency failures subclass ``RuntimeError``.
Not-found conditions on lookups are never exceptions: they come back
as ``None`` or an empty list.  Writes that target a missing row raise.

Reranker failures never surface here; they degrade to an
``Unchanged`` outcome (see ``src.orchestration.reranker``).
"""

from __future__ import annotations

from uuid import UUID


class KnowledgeBaseError(Exception):
    """Root of every error raised by this package."""


# ── Input errors ──────────────────────────────────────────────────


class InvalidChunkOptionsError(KnowledgeBaseError, ValueError):
    pass


class EmptyDocumentError(KnowledgeBaseError, ValueError):
    pass


class InvalidCategoryError(KnowledgeBaseError, ValueError):
    pass


# ── Remote errors ─────────────────────────────────────────────────


class EmbeddingError(KnowledgeBaseError, RuntimeError):
    """An embedding call failed or returned an unusable response.

    Safe to retry: embedding calls have no remote side effects.
    """


class EmbeddingDimensionError(EmbeddingError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


# ── Ingestion ─────────────────────────────────────────────────────


class DocumentNotFoundError(KnowledgeBaseError, LookupError):
    def __init__(self, document_id: UUID | str) -> None:
        super().__init__(f"Document {document_id} does not exist")
        self.document_id = document_id


class DocumentProcessingError(KnowledgeBaseError, RuntimeError):
    """Terminal failure for one document.  The document row is in ERROR status."""

    def __init__(self, document_id: UUID | str, message: str) -> None:
        super().__init__(f"Document {document_id} processing failed: {message}")
        self.document_id = document_id
        self.reason = message


# ── Image pool consistency ────────────────────────────────────────


class ImageUsageError(KnowledgeBaseError, RuntimeError):
    """record_usage() was not applied.  Neither the usage row nor the count changed."""


class DuplicateImageUsageError(ImageUsageError):
    def __init__(self, user_id: UUID | str, image_pool_id: UUID | str) -> None:
        super().__init__(f"User {user_id} was already served pooled image {image_pool_id}")
        self.user_id = user_id
        self.image_pool_id = image_pool_id


class ImagePoolEntryNotFoundError(ImageUsageError):
    def __init__(self, image_pool_id: UUID | str) -> None:
        super().__init__(f"Image pool entry {image_pool_id} does not exist")
        self.image_pool_id = image_pool_id

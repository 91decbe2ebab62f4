from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class ImagePoolEntry(BaseModel):
    """A generated slide image kept for reuse across users."""

    id: UUID
    category: str  # "{slideType}_{topicBucket}", fixed at creation.
    storage_key: str  # Object-storage key; bytes never pass through here.
    prompt: str
    width: int
    height: int
    usage_count: int
    created_at: datetime


class PoolStats(BaseModel):
    total_images: int
    total_usages: int
    category_counts: dict[str, int]

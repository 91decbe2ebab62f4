from __future__ import annotations

import asyncio
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from config import settings


# ---------------------------------------------------------------------------
# Windows event loop fix: psycopg3 AsyncConnection requires SelectorEventLoop,
# not ProactorEventLoop (the default on Windows).
# ---------------------------------------------------------------------------
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@contextmanager
def override_settings(**overrides: Any) -> Iterator[None]:
    original: dict[str, Any] = {}
    for key, value in overrides.items():
        original[key] = getattr(settings, key)
        setattr(settings, key, value)
    try:
        yield
    finally:
        for key, value in original.items():
            setattr(settings, key, value)


def unit_vector(position: int, second: int | None = None, weight: float = 0.0) -> list[float]:
    """A vector of settings.embedding_dimensions with controlled cosine geometry.

    ``unit_vector(0)`` and ``unit_vector(0, 1, w)`` have cosine similarity
    ``1 / sqrt(1 + w**2)``.
    """
    vector = [0.0] * settings.embedding_dimensions
    vector[position] = 1.0
    if second is not None:
        vector[second] = weight
    return vector


class FakeEmbedder:
    """Embedding client stand-in: fixed vectors per text, default vector otherwise."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.calls: list[list[str]] = []
        self.is_available = True

    async def batch_embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vectors.get(text, unit_vector(0)) for text in texts]

    async def embed(self, text: str) -> list[float]:
        return (await self.batch_embed([text]))[0]


# ---------------------------------------------------------------------------
# Database fixtures.  Everything below skips unless DATABASE_URL is set.
# ---------------------------------------------------------------------------

_TABLES = (
    "image_usages",
    "image_pool",
    "slide_sources",
    "slides",
    "document_chunks",
    "documents",
)


@pytest_asyncio.fixture
async def db_pool() -> Any:
    """A fresh AsyncConnectionPool over truncated tables."""
    database_url = os.getenv("DATABASE_URL") or settings.database_url
    if not database_url:
        pytest.skip("Skipping DB integration tests: DATABASE_URL is not set.")

    from pgvector.psycopg import register_vector_async
    from psycopg import AsyncConnection
    from psycopg_pool import AsyncConnectionPool

    from src.indexing.schema import init_schema

    conn = await AsyncConnection.connect(database_url, autocommit=True)
    try:
        async with conn.cursor() as cur:
            # Prevent indefinite hangs when stale sessions hold DDL locks.
            await cur.execute("SET lock_timeout = '5s';")
        await init_schema(conn)
        async with conn.cursor() as cur:
            await cur.execute(f"TRUNCATE TABLE {', '.join(_TABLES)} CASCADE;")
    finally:
        await conn.close()

    pool = AsyncConnectionPool(
        conninfo=database_url,
        min_size=1,
        max_size=4,
        open=False,
        kwargs={"autocommit": True},
        configure=register_vector_async,
    )
    await pool.open()
    try:
        yield pool
    finally:
        await pool.close()


async def insert_document(
    pool: Any,
    *,
    title: str = "Deck source",
    user_id: UUID | None = None,
    status: str = "UPLOADED",
) -> UUID:
    document_id = uuid4()
    async with pool.connection() as conn:
        await conn.execute(
            "INSERT INTO documents (id, user_id, title, status) VALUES (%s, %s, %s, %s)",
            (document_id, user_id, title, status),
        )
    return document_id


async def insert_slide(pool: Any, *, presentation_id: UUID, title: str | None) -> UUID:
    slide_id = uuid4()
    async with pool.connection() as conn:
        await conn.execute(
            "INSERT INTO slides (id, presentation_id, title) VALUES (%s, %s, %s)",
            (slide_id, presentation_id, title),
        )
    return slide_id


async def link_slide_source(
    pool: Any, slide_id: UUID, chunk_id: UUID, relevance: float = 1.0
) -> None:
    async with pool.connection() as conn:
        await conn.execute(
            "INSERT INTO slide_sources (slide_id, chunk_id, relevance) VALUES (%s, %s, %s)",
            (slide_id, chunk_id, relevance),
        )

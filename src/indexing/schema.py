# schema.py is just SQL wrapped in Python

from __future__ import annotations

from psycopg import AsyncConnection

from config import settings

# % settings.embedding_dimensions is string formatting into a SQL statement.
# It's safe here because embedding_dimensions is an integer from config, not user input.

# runs a series of CREATE TABLE / INDEX IF NOT EXISTS against the postgres database
# IF NOT EXISTS makes repeated calls safe

# documents - one row per uploaded document; status tracks the ingestion lifecycle
# document_chunks - one row per chunk with its embedding; seq is insertion order, used to break similarity ties
# slides / slide_sources - written by the presentation side, only read here (staleness)
# image_pool / image_usages - reusable generated images and who has already been served each one

# the unique constraint on image_usages (user_id, image_pool_id) is what guarantees a user is never
# recorded twice against the same pooled image
# approval_score / usage_count on chunks and relevance on slide_sources feed chunk_scoring.py;
# the ALTERs bring tables created before those columns existed up to date
# HNSW index is for the vector similarity search over chunk embeddings (cosine)

_STATEMENTS = (
    "CREATE EXTENSION IF NOT EXISTS vector;",
    """
    CREATE TABLE IF NOT EXISTS documents (
        id UUID PRIMARY KEY,
        user_id UUID NULL,
        title TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'UPLOADED'
            CHECK (status IN ('UPLOADED', 'PARSING', 'EMBEDDING', 'READY', 'ERROR')),
        content_hash TEXT NULL,
        chunk_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        processed_at TIMESTAMPTZ NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS documents_user_id_idx ON documents (user_id);",
    """
    CREATE TABLE IF NOT EXISTS document_chunks (
        id UUID PRIMARY KEY,
        seq BIGINT GENERATED ALWAYS AS IDENTITY,
        document_id UUID NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        heading TEXT NULL,
        heading_level SMALLINT NOT NULL DEFAULT 0 CHECK (heading_level BETWEEN 0 AND 6),
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        embedding VECTOR(%d) NOT NULL,
        approval_score DOUBLE PRECISION NOT NULL DEFAULT 0,
        usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (document_id, chunk_index)
    );
    """
    % settings.embedding_dimensions,
    "ALTER TABLE document_chunks ADD COLUMN IF NOT EXISTS approval_score DOUBLE PRECISION NOT NULL DEFAULT 0;",
    "ALTER TABLE document_chunks ADD COLUMN IF NOT EXISTS usage_count INTEGER NOT NULL DEFAULT 0;",
    """
    CREATE INDEX IF NOT EXISTS document_chunks_document_id_idx
    ON document_chunks (document_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS document_chunks_embedding_hnsw_idx
    ON document_chunks USING hnsw (embedding vector_cosine_ops);
    """,
    """
    CREATE TABLE IF NOT EXISTS slides (
        id UUID PRIMARY KEY,
        presentation_id UUID NOT NULL,
        title TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS slide_sources (
        slide_id UUID NOT NULL REFERENCES slides(id) ON DELETE CASCADE,
        chunk_id UUID NOT NULL REFERENCES document_chunks(id) ON DELETE CASCADE,
        relevance DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (slide_id, chunk_id)
    );
    """,
    "ALTER TABLE slide_sources ADD COLUMN IF NOT EXISTS relevance DOUBLE PRECISION NOT NULL DEFAULT 1.0;",
    """
    CREATE INDEX IF NOT EXISTS slide_sources_chunk_id_idx
    ON slide_sources (chunk_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS image_pool (
        id UUID PRIMARY KEY,
        seq BIGINT GENERATED ALWAYS AS IDENTITY,
        category TEXT NOT NULL,
        storage_key TEXT NOT NULL,
        prompt TEXT NOT NULL,
        width INTEGER NOT NULL CHECK (width > 0),
        height INTEGER NOT NULL CHECK (height > 0),
        usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS image_pool_category_usage_idx
    ON image_pool (category, usage_count, created_at);
    """,
    """
    CREATE TABLE IF NOT EXISTS image_usages (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL,
        image_pool_id UUID NOT NULL REFERENCES image_pool(id) ON DELETE CASCADE,
        slide_id UUID NULL,
        served_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, image_pool_id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS image_usages_image_pool_id_idx
    ON image_usages (image_pool_id);
    """,
)


async def init_schema(conn: AsyncConnection) -> None:
    async with conn.transaction():
        async with conn.cursor() as cur:
            for statement in _STATEMENTS:
                await cur.execute(statement)

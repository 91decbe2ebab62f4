from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to this file's directory (the project root),
# not the working directory.
_ENV_FILE = Path(__file__).resolve().parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), case_sensitive=False)

    # ── Database ──────────────────────────────────────────────────
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    db_pool_min_size: int = Field(default=1, validation_alias="DB_POOL_MIN_SIZE")
    db_pool_max_size: int = Field(default=10, validation_alias="DB_POOL_MAX_SIZE")

    # ── Chunking ──────────────────────────────────────────────────
    # Character counts, not tokens.
    chunk_max_size: int = Field(default=2000, validation_alias="CHUNK_MAX_SIZE")
    chunk_min_size: int = Field(default=200, validation_alias="CHUNK_MIN_SIZE")
    chunk_overlap_size: int = Field(default=200, validation_alias="CHUNK_OVERLAP_SIZE")

    # ── Embeddings ────────────────────────────────────────────────
    embedding_base_url: str = Field(
        default="https://api.openai.com/v1", validation_alias="EMBEDDING_BASE_URL"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small", validation_alias="EMBEDDING_MODEL"
    )
    embedding_api_key: str | None = Field(default=None, validation_alias="EMBEDDING_API_KEY")
    embedding_dimensions: int = Field(default=1536, validation_alias="EMBEDDING_DIMENSIONS")
    # Texts per provider call.  OpenAI accepts up to 2048 inputs but the
    # knowledge base keeps batches small so one slow call does not stall
    # a whole document.  Voyage-style providers need 50.
    embedding_batch_size: int = Field(default=100, validation_alias="EMBEDDING_BATCH_SIZE")
    # Max concurrent batch calls in flight for one batch_embed().
    embedding_max_workers: int = Field(default=4, validation_alias="EMBEDDING_MAX_WORKERS")
    embedding_timeout_seconds: float = Field(
        default=60.0, validation_alias="EMBEDDING_TIMEOUT_SECONDS"
    )
    # Retries with exponential backoff are done by the OpenAI SDK.
    embedding_max_retries: int = Field(default=2, validation_alias="EMBEDDING_MAX_RETRIES")
    # text-embedding-3-* reject inputs above 8191 tokens.
    embedding_max_input_tokens: int = Field(
        default=8191, validation_alias="EMBEDDING_MAX_INPUT_TOKENS"
    )
    embedding_tokenizer_name: str = Field(
        default="cl100k_base", validation_alias="EMBEDDING_TOKENIZER_NAME"
    )

    # ── Retrieval ─────────────────────────────────────────────────
    retrieval_top_k: int = Field(default=10, validation_alias="RETRIEVAL_TOP_K")
    # Minimum cosine similarity for a chunk to be returned by search().
    retrieval_similarity_floor: float = Field(
        default=0.3, validation_alias="RETRIEVAL_SIMILARITY_FLOOR"
    )
    # pgvector HNSW recall knob (higher = better recall, slightly slower).
    retrieval_hnsw_ef_search: int = Field(
        default=100, validation_alias="RETRIEVAL_HNSW_EF_SEARCH"
    )
    retrieval_timeout_seconds: float = Field(
        default=30.0, validation_alias="RETRIEVAL_TIMEOUT_SECONDS"
    )
    # Keyword fallback: words shorter than this are ignored, and at most
    # keyword_search_max_terms words are matched.
    keyword_search_min_term_length: int = Field(
        default=4, validation_alias="KEYWORD_SEARCH_MIN_TERM_LENGTH"
    )
    keyword_search_max_terms: int = Field(
        default=8, validation_alias="KEYWORD_SEARCH_MAX_TERMS"
    )

    # ── Reranking ─────────────────────────────────────────────────
    # "zeroentropy" | "cohere" | "jina" | "none"
    reranker_provider: str = Field(
        default="zeroentropy", validation_alias="RERANKER_PROVIDER"
    )
    reranker_api_key: str | None = Field(default=None, validation_alias="RERANKER_API_KEY")
    reranker_model: str = Field(default="zerank-2", validation_alias="RERANKER_MODEL")
    reranker_endpoint: str = Field(
        default="https://api.jina.ai/v1/rerank", validation_alias="RERANKER_ENDPOINT"
    )
    reranker_timeout_seconds: float = Field(
        default=15.0, validation_alias="RERANKER_TIMEOUT_SECONDS"
    )
    reranker_min_score: float = Field(default=0.1, validation_alias="RERANKER_MIN_SCORE")
    # search() pulls top_k * multiplier candidates before reranking so the
    # reranker has something to reorder.
    reranker_candidate_multiplier: int = Field(
        default=3, validation_alias="RERANKER_CANDIDATE_MULTIPLIER"
    )

    # ── Chunk scoring ─────────────────────────────────────────────
    # Approval feedback from finished decks and rejected slides.  A boost
    # is boost_factor * link relevance, capped per update; scores stay
    # within [approval_score_min, approval_score_max].
    approval_boost_factor: float = Field(default=0.1, validation_alias="APPROVAL_BOOST_FACTOR")
    approval_max_boost: float = Field(default=0.5, validation_alias="APPROVAL_MAX_BOOST")
    approval_penalty: float = Field(default=0.05, validation_alias="APPROVAL_PENALTY")
    approval_score_max: float = Field(default=5.0, validation_alias="APPROVAL_SCORE_MAX")
    approval_score_min: float = Field(default=-1.0, validation_alias="APPROVAL_SCORE_MIN")
    # weighted = similarity * (1 + approval_score * approval_weight)
    approval_weight: float = Field(default=0.2, validation_alias="APPROVAL_WEIGHT")

    # ── Image pool ────────────────────────────────────────────────
    image_pool_default_width: int = Field(
        default=1280, validation_alias="IMAGE_POOL_DEFAULT_WIDTH"
    )
    image_pool_default_height: int = Field(
        default=720, validation_alias="IMAGE_POOL_DEFAULT_HEIGHT"
    )

    # ── Logging ───────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")


settings = Settings()

"""Configuration management for the retrieval engine.

This module provides the configuration dataclass, environment variable loading,
and the config service that the embedding tiers and provider clients re-read
on every call.
"""

import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv


class EmbeddingMode(str, Enum):
    """Embedding tier selection mode."""

    AUTO = "auto"
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def parse(cls, value: Optional[str], default: "EmbeddingMode" = None) -> "EmbeddingMode":
        """Parse a mode string, accepting a few legacy aliases."""
        default = default or cls.AUTO
        if not value:
            return default
        normalized = value.strip().lower()
        aliases = {
            "local-forced": cls.LOCAL,
            "onnx": cls.LOCAL,
            "remote-forced": cls.REMOTE,
            "gemini": cls.REMOTE,
            "openai": cls.REMOTE,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            return default


@dataclass
class RAGConfig:
    """Configuration for the notebook retrieval engine.

    Attributes:
        embedding_mode: Tier selection (auto, local, remote)
        local_model_name: Sentence-transformer model used on-device
        model_cache_dir: Directory holding downloaded on-device models
        remote_model_name: Remote embedding model name
        remote_dimensions: Output dimensionality requested from the remote API
        remote_api_key: Credential for the remote embedding API
        remote_batch_size: Maximum texts per remote embedding call
        max_retries: Attempts for rate-limited/timed-out remote calls
        retry_base_delay: First backoff delay in seconds (doubles per attempt)
        request_timeout: Per-request timeout for provider calls in seconds
        hash_dimensions: Dimensionality of the hash fallback vectors
        vector_store_dir: Root directory of the per-notebook shard files
        chunk_size: Target tokens per chunk
        chunk_overlap: Overlap tokens between consecutive chunks
        search_limit: Results used for context in standard mode / initial agentic window
        subquery_limit: Results fetched per agentic sub-query
        expanded_limit: Context window after an "insufficient" verdict
        max_sub_queries: Upper bound on generated sub-queries
        sufficiency_min_chars: Contexts shorter than this skip the sufficiency check
        max_refinements: Maximum context expansions per agentic query
        citation_snippet_chars: Citation snippet length
        recommendation_excerpt_chars: Source excerpt length used for recommendations
        recommendation_overfetch: Over-fetch multiplier before per-source dedup
        generation_model: Model used for sub-query and sufficiency assist calls
        generation_api_key: Credential for the text-generation endpoint
        index_tracker_file: JSON file recording which sources are embedded with which model
        max_workers: Thread pool size for the sub-query fan-out
    """

    embedding_mode: EmbeddingMode = EmbeddingMode.AUTO
    local_model_name: str = "all-MiniLM-L6-v2"
    model_cache_dir: Path = Path.home() / ".cache" / "torch" / "sentence_transformers"
    remote_model_name: str = "text-embedding-3-small"
    remote_dimensions: int = 768
    remote_api_key: Optional[str] = None
    remote_batch_size: int = 100
    max_retries: int = 3
    retry_base_delay: float = 1.0
    request_timeout: float = 30.0
    hash_dimensions: int = 768
    vector_store_dir: Path = Path(".vector_store")
    chunk_size: int = 500
    chunk_overlap: int = 100
    search_limit: int = 8
    subquery_limit: int = 6
    expanded_limit: int = 12
    max_sub_queries: int = 3
    sufficiency_min_chars: int = 200
    max_refinements: int = 1
    citation_snippet_chars: int = 200
    recommendation_excerpt_chars: int = 2000
    recommendation_overfetch: int = 3
    generation_model: str = "claude-3-5-haiku-20241022"
    generation_api_key: Optional[str] = None
    index_tracker_file: Path = Path(".rag_index_tracker.json")
    max_workers: int = 3

    def __post_init__(self):
        """Ensure Path and enum fields are properly initialized."""
        if not isinstance(self.embedding_mode, EmbeddingMode):
            self.embedding_mode = EmbeddingMode.parse(str(self.embedding_mode))
        if not isinstance(self.model_cache_dir, Path):
            self.model_cache_dir = Path(self.model_cache_dir)
        if not isinstance(self.vector_store_dir, Path):
            self.vector_store_dir = Path(self.vector_store_dir)
        if not isinstance(self.index_tracker_file, Path):
            self.index_tracker_file = Path(self.index_tracker_file)


def load_config_from_env() -> RAGConfig:
    """Load retrieval configuration from environment variables.

    Environment variables:
        RAG_EMBEDDING_MODE: auto, local or remote (default: auto)
        RAG_LOCAL_MODEL: On-device sentence-transformer model (default: all-MiniLM-L6-v2)
        RAG_MODEL_CACHE_DIR: On-device model cache directory
        RAG_REMOTE_MODEL: Remote embedding model (default: text-embedding-3-small)
        RAG_REMOTE_DIMENSIONS: Remote vector size (default: 768)
        RAG_REMOTE_BATCH_SIZE: Texts per remote call (default: 100)
        RAG_MAX_RETRIES: Retry attempts on rate limits/timeouts (default: 3)
        RAG_RETRY_BASE_DELAY: First backoff delay in seconds (default: 1.0)
        RAG_REQUEST_TIMEOUT: Provider request timeout in seconds (default: 30)
        RAG_HASH_DIMENSIONS: Hash fallback vector size (default: 768)
        RAG_VECTOR_STORE_DIR: Shard root directory (default: .vector_store)
        RAG_CHUNK_SIZE: Target tokens per chunk (default: 500)
        RAG_CHUNK_OVERLAP: Overlapping tokens (default: 100)
        RAG_SEARCH_LIMIT / RAG_SUBQUERY_LIMIT / RAG_EXPANDED_LIMIT: Retrieval windows
        RAG_MAX_SUB_QUERIES: Generated sub-query cap (default: 3)
        RAG_SUFFICIENCY_MIN_CHARS: Sufficiency short-circuit length (default: 200)
        RAG_MAX_REFINEMENTS: Context expansions per query (default: 1)
        RAG_GENERATION_MODEL: Model for assist calls
        RAG_INDEX_TRACKER_FILE: Index tracker path
        RAG_MAX_WORKERS: Sub-query fan-out threads (default: 3)

        OPENAI_API_KEY: Remote embedding credential
        ANTHROPIC_API_KEY / CLAUDE_API_KEY: Text-generation credential

    Returns:
        RAGConfig: Configuration object with values from environment
    """
    load_dotenv()

    def str_to_float(value: Optional[str], default: float) -> float:
        """Convert string to float with error handling."""
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            return default

    def str_to_int(value: Optional[str], default: int) -> int:
        """Convert string to int with error handling."""
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    defaults = RAGConfig()

    model_cache_dir_str = os.getenv('RAG_MODEL_CACHE_DIR') or os.getenv('MODEL_CACHE_DIR')
    model_cache_dir = Path(model_cache_dir_str) if model_cache_dir_str else defaults.model_cache_dir

    vector_store_dir_str = os.getenv('RAG_VECTOR_STORE_DIR')
    vector_store_dir = Path(vector_store_dir_str) if vector_store_dir_str else defaults.vector_store_dir

    index_tracker_str = os.getenv('RAG_INDEX_TRACKER_FILE')
    index_tracker_file = Path(index_tracker_str) if index_tracker_str else defaults.index_tracker_file

    return RAGConfig(
        embedding_mode=EmbeddingMode.parse(os.getenv('RAG_EMBEDDING_MODE')),
        local_model_name=os.getenv('RAG_LOCAL_MODEL', defaults.local_model_name),
        model_cache_dir=model_cache_dir,
        remote_model_name=os.getenv('RAG_REMOTE_MODEL', defaults.remote_model_name),
        remote_dimensions=str_to_int(os.getenv('RAG_REMOTE_DIMENSIONS'), defaults.remote_dimensions),
        remote_api_key=os.getenv('OPENAI_API_KEY') or None,
        remote_batch_size=str_to_int(os.getenv('RAG_REMOTE_BATCH_SIZE'), defaults.remote_batch_size),
        max_retries=str_to_int(os.getenv('RAG_MAX_RETRIES'), defaults.max_retries),
        retry_base_delay=str_to_float(os.getenv('RAG_RETRY_BASE_DELAY'), defaults.retry_base_delay),
        request_timeout=str_to_float(os.getenv('RAG_REQUEST_TIMEOUT'), defaults.request_timeout),
        hash_dimensions=str_to_int(os.getenv('RAG_HASH_DIMENSIONS'), defaults.hash_dimensions),
        vector_store_dir=vector_store_dir,
        chunk_size=str_to_int(os.getenv('RAG_CHUNK_SIZE'), defaults.chunk_size),
        chunk_overlap=str_to_int(os.getenv('RAG_CHUNK_OVERLAP'), defaults.chunk_overlap),
        search_limit=str_to_int(os.getenv('RAG_SEARCH_LIMIT'), defaults.search_limit),
        subquery_limit=str_to_int(os.getenv('RAG_SUBQUERY_LIMIT'), defaults.subquery_limit),
        expanded_limit=str_to_int(os.getenv('RAG_EXPANDED_LIMIT'), defaults.expanded_limit),
        max_sub_queries=str_to_int(os.getenv('RAG_MAX_SUB_QUERIES'), defaults.max_sub_queries),
        sufficiency_min_chars=str_to_int(
            os.getenv('RAG_SUFFICIENCY_MIN_CHARS'), defaults.sufficiency_min_chars
        ),
        max_refinements=str_to_int(os.getenv('RAG_MAX_REFINEMENTS'), defaults.max_refinements),
        generation_model=os.getenv('RAG_GENERATION_MODEL', defaults.generation_model),
        generation_api_key=os.getenv('ANTHROPIC_API_KEY') or os.getenv('CLAUDE_API_KEY') or None,
        index_tracker_file=index_tracker_file,
        max_workers=str_to_int(os.getenv('RAG_MAX_WORKERS'), defaults.max_workers),
    )


class ConfigService:
    """Source of the active configuration.

    Without a fixed config, every ``current()`` call re-reads the environment
    so that credential or tier changes take effect on the next call. Runtime
    changes made through ``update()`` bump ``version``, which provider client
    factories watch to know when to rebuild.
    """

    def __init__(
        self,
        config: Optional[RAGConfig] = None,
        loader: Callable[[], RAGConfig] = load_config_from_env,
    ):
        self._config = config
        self._loader = loader
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def current(self) -> RAGConfig:
        if self._config is not None:
            return self._config
        return self._loader()

    def update(self, **changes) -> RAGConfig:
        """Apply runtime changes on top of the current config.

        Args:
            **changes: RAGConfig field overrides

        Returns:
            The new active configuration
        """
        self._config = replace(self.current(), **changes)
        self._version += 1
        return self._config

"""Retrieval engine for grounding questions in notebook documents.

Core Components:
- config: Configuration dataclass, environment loading and the config service
- document_chunker: Sentence-window and tabular chunking
- embedding_service: Tiered embeddings (on-device, remote, hash fallback)
- vector_store: Per-source JSON shards and brute-force cosine search
- retrieval: Standard and agentic retrieval orchestration
- recommender: Cross-notebook recommendations and global search
- text_generation: Sub-query planning and sufficiency judging
- pipeline_stage: Ingestion pipeline (chunk, embed, store, track)
- index_tracker: Which sources are embedded with which model
- metrics: Per-query retrieval metrics
- service: NotebookRAGService facade
"""

from .config import ConfigService, EmbeddingMode, RAGConfig, load_config_from_env
from .document_chunker import DocumentChunker, estimate_tokens
from .embedding_service import (
    EmbeddingBatch,
    EmbeddingTier,
    HashEmbeddingProvider,
    LocalEmbeddingProvider,
    RemoteEmbeddingProvider,
    TieredEmbeddingService,
    hash_embed,
)
from .errors import (
    AssistCallError,
    ConfigurationError,
    CorruptShardError,
    ErrorClassifier,
    RAGError,
    TransientProviderError,
)
from .index_tracker import IndexTracker
from .metrics import MetricsCollector, RetrievalMetrics
from .pipeline_stage import RAGPipelineStage
from .providers import ClientFactory
from .recommender import CrossNotebookRecommender, InMemoryCatalog, SourceCatalog
from .retrieval import RetrievalOrchestrator, build_citations, format_context, merge_results
from .service import NotebookRAGService
from .text_generation import AnthropicTextGenerator, LLMSufficiencyJudge, SubQueryPlanner
from .types import (
    Chunk,
    Citation,
    GlobalSearchHit,
    ProcessResult,
    RagResult,
    SearchResult,
    SourceRecommendation,
    StoredChunk,
)
from .vector_store import JsonFileShardBackend, ShardBackend, VectorStore, cosine_similarity

__all__ = [
    "ConfigService",
    "EmbeddingMode",
    "RAGConfig",
    "load_config_from_env",
    "DocumentChunker",
    "estimate_tokens",
    "EmbeddingBatch",
    "EmbeddingTier",
    "HashEmbeddingProvider",
    "LocalEmbeddingProvider",
    "RemoteEmbeddingProvider",
    "TieredEmbeddingService",
    "hash_embed",
    "AssistCallError",
    "ConfigurationError",
    "CorruptShardError",
    "ErrorClassifier",
    "RAGError",
    "TransientProviderError",
    "IndexTracker",
    "MetricsCollector",
    "RetrievalMetrics",
    "RAGPipelineStage",
    "ClientFactory",
    "CrossNotebookRecommender",
    "InMemoryCatalog",
    "SourceCatalog",
    "RetrievalOrchestrator",
    "build_citations",
    "format_context",
    "merge_results",
    "NotebookRAGService",
    "AnthropicTextGenerator",
    "LLMSufficiencyJudge",
    "SubQueryPlanner",
    "Chunk",
    "Citation",
    "GlobalSearchHit",
    "ProcessResult",
    "RagResult",
    "SearchResult",
    "SourceRecommendation",
    "StoredChunk",
    "JsonFileShardBackend",
    "ShardBackend",
    "VectorStore",
    "cosine_similarity",
]

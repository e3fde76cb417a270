"""
Service facade for the retrieval engine.

NotebookRAGService wires configuration, the embedding tiers, the vector
store, the retrieval orchestrator, the recommender and the ingestion
pipeline into one object exposing every core operation.
"""

import logging
from typing import List, Mapping, Optional, Sequence

from .config import ConfigService
from .document_chunker import DocumentChunker
from .embedding_service import EmbeddingTier, TieredEmbeddingService
from .index_tracker import IndexTracker
from .metrics import MetricsCollector
from .pipeline_stage import RAGPipelineStage
from .recommender import CrossNotebookRecommender, SourceCatalog
from .retrieval import RetrievalOrchestrator
from .text_generation import (
    AnthropicTextGenerator,
    LLMSufficiencyJudge,
    SubQueryPlanner,
    SufficiencyJudge,
    TextGenerator,
)
from .types import Chunk, GlobalSearchHit, ProcessResult, RagResult, SearchResult, SourceRecommendation
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class NotebookRAGService:
    """Entry point for chunking, embedding, storage, retrieval and recommendations.

    Any collaborator can be injected; the rest are built from the config.
    Without an explicit text generator, the Anthropic generator is used when
    a text-generation API key is configured, otherwise agentic retrieval runs
    with the original question as its only sub-query and no sufficiency judge.
    """

    def __init__(
        self,
        config_service: Optional[ConfigService] = None,
        embedding_service: Optional[TieredEmbeddingService] = None,
        vector_store: Optional[VectorStore] = None,
        text_generator: Optional[TextGenerator] = None,
        judge: Optional[SufficiencyJudge] = None,
        catalog: Optional[SourceCatalog] = None,
        index_tracker: Optional[IndexTracker] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config_service = config_service or ConfigService()
        config = self.config_service.current()

        self.embedding_service = embedding_service or TieredEmbeddingService(self.config_service)
        self.vector_store = vector_store or VectorStore(persist_dir=str(config.vector_store_dir))
        self.chunker = DocumentChunker(chunk_size=config.chunk_size, chunk_overlap=config.chunk_overlap)
        self.metrics = metrics or MetricsCollector()

        if text_generator is None and config.generation_api_key:
            text_generator = AnthropicTextGenerator(self.config_service)
        self.text_generator = text_generator
        if judge is None and text_generator is not None:
            judge = LLMSufficiencyJudge(text_generator)

        self.orchestrator = RetrievalOrchestrator(
            self.embedding_service,
            self.vector_store,
            self.config_service,
            planner=SubQueryPlanner(text_generator, max_queries=config.max_sub_queries),
            judge=judge,
            metrics=self.metrics,
        )
        self.recommender = CrossNotebookRecommender(
            self.embedding_service,
            self.vector_store,
            self.config_service,
            catalog=catalog,
        )
        self.pipeline = RAGPipelineStage(
            self.config_service,
            embedding_service=self.embedding_service,
            vector_store=self.vector_store,
            chunker=self.chunker,
            index_tracker=index_tracker,
        )

        logger.info(
            f"NotebookRAGService ready (mode={config.embedding_mode.value}, "
            f"store={config.vector_store_dir}, assist={'on' if text_generator else 'off'})"
        )

    # Chunking and embedding

    def chunk(
        self,
        text: str,
        source_id: str = "",
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        page_breaks: Optional[Sequence[int]] = None,
    ) -> List[Chunk]:
        return self.chunker.chunk(text, source_id, chunk_size, overlap, page_breaks)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return self.embedding_service.embed(texts)

    def embed_query(self, text: str) -> List[float]:
        return self.embedding_service.embed_query(text)

    def get_active_model(self) -> EmbeddingTier:
        return self.embedding_service.get_active_model()

    # Storage

    def add_documents(
        self,
        notebook_id: str,
        source_id: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
        embedding_model: Optional[str] = None,
    ) -> int:
        return self.vector_store.add_documents(notebook_id, source_id, chunks, vectors, embedding_model)

    def ingest_source(self, notebook_id: str, source_id: str, text: str, **kwargs) -> ProcessResult:
        """Chunk, embed and store one source (see RAGPipelineStage.process_source)."""
        return self.pipeline.process_source(notebook_id, source_id, text, **kwargs)

    def delete_source(self, notebook_id: str, source_id: str) -> bool:
        return self.pipeline.remove_source(notebook_id, source_id)

    def delete_notebook(self, notebook_id: str) -> bool:
        return self.pipeline.remove_notebook(notebook_id)

    def search(
        self,
        notebook_id: str,
        vector: Sequence[float],
        limit: int = 5,
        source_ids: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        return self.vector_store.search(notebook_id, vector, limit, source_ids)

    def search_multiple(self, notebook_ids: Sequence[str], vector: Sequence[float], limit: int = 5) -> List[SearchResult]:
        return self.vector_store.search_multiple(notebook_ids, vector, limit)

    # Retrieval

    def query(
        self,
        notebook_id: str,
        question: str,
        source_ids: Optional[Sequence[str]] = None,
        title_map: Optional[Mapping[str, str]] = None,
        agentic: bool = True,
    ) -> RagResult:
        """Retrieve context and citations; retrieval failures propagate."""
        return self.orchestrator.query(notebook_id, question, source_ids, title_map, agentic)

    def query_or_empty(
        self,
        notebook_id: str,
        question: str,
        source_ids: Optional[Sequence[str]] = None,
        title_map: Optional[Mapping[str, str]] = None,
        agentic: bool = True,
    ) -> RagResult:
        """Like ``query`` but resolves any retrieval failure to an empty result.

        Callers can then substitute raw source text or an apology message.
        """
        try:
            return self.query(notebook_id, question, source_ids, title_map, agentic)
        except Exception as e:
            logger.error(f"Retrieval failed for notebook {notebook_id}, returning empty context: {e}")
            return RagResult()

    # Cross-notebook

    def find_related_sources(
        self,
        notebook_id: str,
        source_id: str,
        limit: int = 5,
        source_text: Optional[str] = None,
    ) -> List[SourceRecommendation]:
        return self.recommender.find_related_sources(notebook_id, source_id, limit, source_text)

    def search_across_notebooks(
        self,
        query: str,
        notebook_ids: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[GlobalSearchHit]:
        return self.recommender.search_across_notebooks(query, notebook_ids, limit)

    # Maintenance

    def download_local_model(self) -> bool:
        return self.embedding_service.download_local_model()

    def reembed_stale(self) -> List[ProcessResult]:
        return self.pipeline.reembed_stale()

    def status(self) -> dict:
        """Active tier plus indexing and query statistics."""
        stats = self.pipeline.get_stats()
        stats['active_tier'] = self.embedding_service.get_active_model().value
        stats['active_model'] = self.embedding_service.active_model_name()
        stats['queries'] = self.metrics.get_aggregated_metrics().to_dict()
        return stats

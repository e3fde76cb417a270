"""Cross-notebook recommendations and global search.

This module reuses the vector store to surface sources in other notebooks
that are semantically close to a given source, and to run one globally
ranked search over many notebooks.
"""

import logging
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from .config import ConfigService
from .embedding_service import TieredEmbeddingService
from .types import GlobalSearchHit, SearchResult, SourceRecommendation
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

UNKNOWN_NOTEBOOK = "Unknown Notebook"
UNKNOWN_SOURCE = "Unknown Source"
SEARCH_SNIPPET_CHARS = 300


class SourceCatalog(Protocol):
    """Read-only lookup of notebook/source metadata."""

    def get_source_text(self, source_id: str) -> Optional[str]:
        ...

    def get_notebook_titles(self) -> Mapping[str, str]:
        ...

    def get_source_titles(self) -> Mapping[str, str]:
        ...


class InMemoryCatalog:
    """Dictionary-backed SourceCatalog."""

    def __init__(
        self,
        notebook_titles: Optional[Dict[str, str]] = None,
        source_titles: Optional[Dict[str, str]] = None,
        source_texts: Optional[Dict[str, str]] = None,
    ):
        self.notebook_titles = dict(notebook_titles or {})
        self.source_titles = dict(source_titles or {})
        self.source_texts = dict(source_texts or {})

    def add_notebook(self, notebook_id: str, title: str) -> None:
        self.notebook_titles[notebook_id] = title

    def add_source(self, source_id: str, title: str, text: Optional[str] = None) -> None:
        self.source_titles[source_id] = title
        if text is not None:
            self.source_texts[source_id] = text

    def get_source_text(self, source_id: str) -> Optional[str]:
        return self.source_texts.get(source_id)

    def get_notebook_titles(self) -> Mapping[str, str]:
        return self.notebook_titles

    def get_source_titles(self) -> Mapping[str, str]:
        return self.source_titles


def dedupe_by_source(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Keep the best-scoring result per source, highest score first."""
    best: Dict[str, SearchResult] = {}
    for result in results:
        existing = best.get(result.source_id)
        if existing is None or result.score > existing.score:
            best[result.source_id] = result
    return sorted(best.values(), key=lambda r: r.score, reverse=True)


class CrossNotebookRecommender:
    """Finds related sources and content across notebooks.

    Attributes:
        embedding_service: Embedding generation service
        vector_store: Vector storage and search
        config_service: Source of excerpt length and over-fetch factor
        catalog: Optional metadata lookup for titles and source text
    """

    def __init__(
        self,
        embedding_service: TieredEmbeddingService,
        vector_store: VectorStore,
        config_service: ConfigService,
        catalog: Optional[SourceCatalog] = None,
    ):
        """Initialize the recommender.

        Args:
            embedding_service: Embedding generation service
            vector_store: Vector storage and search
            config_service: Configuration collaborator
            catalog: Metadata lookup (titles default to "Unknown ..." without it)
        """
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.config_service = config_service
        self.catalog = catalog

    def find_related_sources(
        self,
        notebook_id: str,
        source_id: str,
        limit: int = 5,
        source_text: Optional[str] = None,
    ) -> List[SourceRecommendation]:
        """Find sources in other notebooks related to the given source.

        This is the main entry point for recommendations. It:
        1. Embeds a leading excerpt of the source's text
        2. Searches every other notebook, over-fetching for deduplication
        3. Keeps the best score per source
        4. Attaches notebook and source titles

        Args:
            notebook_id: Notebook the source belongs to (excluded from the search)
            source_id: Source to find relations for
            limit: Maximum number of recommendations (default: 5)
            source_text: Source text, if the caller already has it

        Returns:
            List of SourceRecommendation objects, highest score first
        """
        config = self.config_service.current()
        text = source_text or self._source_text(notebook_id, source_id)
        if not text or not text.strip():
            logger.debug(f"No content available for source {source_id}, no recommendations")
            return []

        other_notebooks = [nb for nb in self.vector_store.list_notebooks() if nb != notebook_id]
        if not other_notebooks or limit <= 0:
            return []

        batch = self.embedding_service.embed_batch([text[:config.recommendation_excerpt_chars]])
        results = self.vector_store.search_multiple(
            other_notebooks,
            batch.vectors[0],
            limit=limit * config.recommendation_overfetch,
            embedding_model=batch.model,
        )

        deduped = dedupe_by_source(results)[:limit]
        notebook_titles, source_titles = self._titles()

        recommendations = [
            SourceRecommendation(
                notebook_id=r.notebook_id,
                notebook_title=notebook_titles.get(r.notebook_id) or UNKNOWN_NOTEBOOK,
                source_id=r.source_id,
                source_title=source_titles.get(r.source_id) or UNKNOWN_SOURCE,
                score=r.score,
            )
            for r in deduped
        ]

        logger.info(
            f"Found {len(recommendations)} related sources for {source_id} "
            f"(from {len(results)} chunk matches)"
        )
        return recommendations

    def search_across_notebooks(
        self,
        query: str,
        notebook_ids: Optional[Sequence[str]] = None,
        limit: int = 10,
    ) -> List[GlobalSearchHit]:
        """Run one globally ranked search over several notebooks.

        Args:
            query: Search text
            notebook_ids: Notebooks to search (default: all stored notebooks)
            limit: Maximum number of hits (default: 10)

        Returns:
            Hits with display titles and a short snippet
        """
        notebooks = list(notebook_ids) if notebook_ids else self.vector_store.list_notebooks()
        if not notebooks or not query.strip():
            return []

        batch = self.embedding_service.embed_batch([query])
        results = self.vector_store.search_multiple(
            notebooks, batch.vectors[0], limit=limit, embedding_model=batch.model
        )
        notebook_titles, source_titles = self._titles()

        return [
            GlobalSearchHit(
                notebook_id=r.notebook_id,
                notebook_title=notebook_titles.get(r.notebook_id) or UNKNOWN_NOTEBOOK,
                source_id=r.source_id,
                source_title=source_titles.get(r.source_id) or UNKNOWN_SOURCE,
                text=r.text[:SEARCH_SNIPPET_CHARS],
                score=r.score,
                page_number=r.page_number,
            )
            for r in results
        ]

    def _source_text(self, notebook_id: str, source_id: str) -> Optional[str]:
        if self.catalog is not None:
            text = self.catalog.get_source_text(source_id)
            if text:
                return text

        # Rebuild an excerpt from the stored chunks
        entries = self.vector_store.load_source_chunks(notebook_id, source_id)
        if not entries:
            return None
        return " ".join(entry.text for entry in entries)

    def _titles(self):
        if self.catalog is None:
            return {}, {}
        return self.catalog.get_notebook_titles(), self.catalog.get_source_titles()

"""
Ingestion pipeline stage.

This module turns parsed source text into searchable shards: chunk, embed
(recording which tier/model produced the vectors), write the shard and
record the source in the index tracker.
"""

import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from .config import ConfigService
from .document_chunker import DocumentChunker, estimate_tokens
from .embedding_service import TieredEmbeddingService
from .index_tracker import IndexTracker, content_digest
from .types import Chunk, ProcessResult
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class RAGPipelineStage:
    """
    Pipeline stage for chunking, embedding and indexing sources.

    Workflow per source:
    1. Skip if already indexed with the same content and model
    2. Chunk the text (prose or tabular)
    3. Generate embeddings through the tier chain
    4. Write the source's shard
    5. Update index tracker

    Failures never raise out of ``process_source``; they are reported in the
    returned ProcessResult and leave the source unindexed.
    """

    def __init__(
        self,
        config_service: ConfigService,
        embedding_service: Optional[TieredEmbeddingService] = None,
        vector_store: Optional[VectorStore] = None,
        chunker: Optional[DocumentChunker] = None,
        index_tracker: Optional[IndexTracker] = None,
    ):
        """
        Initialize the pipeline stage.

        Args:
            config_service: Configuration collaborator
            embedding_service: Optional embedding service (created if None)
            vector_store: Optional vector store (created if None)
            chunker: Optional document chunker (created if None)
            index_tracker: Optional index tracker (created if None)
        """
        self.config_service = config_service
        config = config_service.current()

        self.embedding_service = embedding_service or TieredEmbeddingService(config_service)
        self.vector_store = vector_store or VectorStore(persist_dir=str(config.vector_store_dir))
        self.chunker = chunker or DocumentChunker(
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
        )
        self.index_tracker = index_tracker or IndexTracker(tracker_file=config.index_tracker_file)

    def process_source(
        self,
        notebook_id: str,
        source_id: str,
        text: str,
        page_breaks: Optional[Sequence[int]] = None,
        tabular: bool = False,
        title: Optional[str] = None,
        force_reindex: bool = False,
    ) -> ProcessResult:
        """
        Index one source's text.

        Args:
            notebook_id: Notebook the source belongs to
            source_id: Source identifier
            text: Parsed source text
            page_breaks: Character offsets at which pages 2..N begin
            tabular: Chunk row by row (CSV/spreadsheet text)
            title: Optional display title recorded in the tracker
            force_reindex: If True, reindex even if already up to date

        Returns:
            ProcessResult with success status and metrics
        """
        start_time = time.time()
        config = self.config_service.current()
        digest = content_digest(
            text or "",
            tuple(page_breaks or ()),
            tabular,
            config.chunk_size,
            config.chunk_overlap,
        )

        try:
            if not force_reindex:
                active_model = self.embedding_service.active_model_name()
                if not self.index_tracker.needs_reindex(notebook_id, source_id, digest, active_model):
                    logger.info(f"Source already indexed and up-to-date: {notebook_id}/{source_id}")
                    return ProcessResult(
                        success=True,
                        notebook_id=notebook_id,
                        source_id=source_id,
                        skipped=True,
                        skip_reason="Already indexed and up-to-date",
                        embedding_model=active_model,
                        processing_time_seconds=time.time() - start_time,
                    )

            logger.debug(f"Chunking source: {notebook_id}/{source_id}")
            if tabular:
                chunks = self.chunker.chunk_tabular(text, source_id, chunk_size=config.chunk_size)
            else:
                chunks = self.chunker.chunk(
                    text,
                    source_id,
                    chunk_size=config.chunk_size,
                    overlap=config.chunk_overlap,
                    page_breaks=page_breaks,
                )

            if not chunks:
                # The shard is replaced wholesale, so an emptied source loses its old one
                if self.remove_source(notebook_id, source_id):
                    logger.info(f"Removed previous index for emptied source {notebook_id}/{source_id}")
                logger.warning(f"No chunks created for {notebook_id}/{source_id}")
                return ProcessResult(
                    success=True,
                    notebook_id=notebook_id,
                    source_id=source_id,
                    skipped=True,
                    skip_reason="No text to index",
                    processing_time_seconds=time.time() - start_time,
                )

            return self._store(notebook_id, source_id, chunks, start_time, digest, title)

        except Exception as e:
            logger.error(f"Failed to process source {notebook_id}/{source_id}: {e}", exc_info=True)
            return ProcessResult(
                success=False,
                notebook_id=notebook_id,
                source_id=source_id,
                error_message=str(e),
                processing_time_seconds=time.time() - start_time,
            )

    def process_batch(
        self,
        sources: List[Tuple[str, str, str]],
        force_reindex: bool = False,
    ) -> List[ProcessResult]:
        """
        Process multiple sources in batch.

        Args:
            sources: List of (notebook_id, source_id, text) tuples
            force_reindex: If True, reindex all sources

        Returns:
            List of ProcessResult objects
        """
        results = [
            self.process_source(notebook_id, source_id, text, force_reindex=force_reindex)
            for notebook_id, source_id, text in sources
        ]

        successful = sum(1 for r in results if r.success)
        failed = sum(1 for r in results if not r.success)
        skipped = sum(1 for r in results if r.skipped)
        logger.info(
            f"Batch processing complete: "
            f"{successful} successful, {failed} failed, {skipped} skipped"
        )
        return results

    def reembed_source(self, notebook_id: str, source_id: str) -> ProcessResult:
        """
        Re-embed a stored source's chunks with the active embedding tier.

        The stored chunk texts are reused as-is, so the original document is
        not needed.
        """
        start_time = time.time()
        try:
            stored = self.vector_store.load_source_chunks(notebook_id, source_id)
            if not stored:
                return ProcessResult(
                    success=False,
                    notebook_id=notebook_id,
                    source_id=source_id,
                    error_message="No stored chunks to re-embed",
                    processing_time_seconds=time.time() - start_time,
                )

            chunks = [
                Chunk(
                    id=entry.id,
                    source_id=source_id,
                    text=entry.text,
                    chunk_index=entry.chunk_index,
                    token_count_estimate=estimate_tokens(entry.text),
                    page_number=entry.page_number,
                )
                for entry in stored
            ]
            previous = self.index_tracker.get_entry(notebook_id, source_id) or {}
            return self._store(
                notebook_id, source_id, chunks, start_time,
                previous.get('content_hash'), previous.get('title'),
            )
        except Exception as e:
            logger.error(f"Failed to re-embed source {notebook_id}/{source_id}: {e}", exc_info=True)
            return ProcessResult(
                success=False,
                notebook_id=notebook_id,
                source_id=source_id,
                error_message=str(e),
                processing_time_seconds=time.time() - start_time,
            )

    def reembed_stale(self) -> List[ProcessResult]:
        """Re-embed every tracked source stored under a model other than the active one."""
        active_model = self.embedding_service.active_model_name()
        stale = self.index_tracker.stale_entries(active_model)
        if stale:
            logger.info(f"Re-embedding {len(stale)} sources stored under other models (active: {active_model})")
        return [self.reembed_source(entry['notebook_id'], entry['source_id']) for entry in stale]

    def remove_source(self, notebook_id: str, source_id: str) -> bool:
        """Delete a source's shard and tracker entry. Returns True if anything was removed."""
        removed_shard = self.vector_store.delete_source(notebook_id, source_id)
        removed_entry = self.index_tracker.remove_entry(notebook_id, source_id)
        return removed_shard or removed_entry

    def remove_notebook(self, notebook_id: str) -> bool:
        """Delete a notebook's shards and tracker entries."""
        removed_shards = self.vector_store.delete_notebook(notebook_id)
        removed_entries = self.index_tracker.remove_notebook(notebook_id)
        return removed_shards or removed_entries > 0

    def get_stats(self) -> Dict:
        """
        Get statistics about indexing.

        Returns:
            Dictionary with tracker and vector store statistics
        """
        vector_stats = {}
        try:
            vector_stats = self.vector_store.stats()
        except OSError as e:
            logger.warning(f"Failed to get vector store stats: {e}")

        config = self.config_service.current()
        return {
            'tracker': self.index_tracker.get_stats(),
            'vector_store': vector_stats,
            'config': {
                'embedding_mode': config.embedding_mode.value,
                'vector_store_dir': str(config.vector_store_dir),
                'chunk_size': config.chunk_size,
                'chunk_overlap': config.chunk_overlap,
            },
        }

    def _store(
        self,
        notebook_id: str,
        source_id: str,
        chunks: List[Chunk],
        start_time: float,
        digest: Optional[str],
        title: Optional[str],
    ) -> ProcessResult:
        logger.debug(f"Generating embeddings for {len(chunks)} chunks")
        batch = self.embedding_service.embed_batch([chunk.text for chunk in chunks])

        stored = self.vector_store.add_documents(
            notebook_id,
            source_id,
            chunks,
            batch.vectors,
            embedding_model=batch.model,
        )

        self.index_tracker.mark_indexed(
            notebook_id=notebook_id,
            source_id=source_id,
            embedding_model=batch.model,
            dimension=batch.dimension,
            chunks_created=stored,
            content_hash=digest,
            title=title,
        )

        processing_time = time.time() - start_time
        logger.info(
            f"Indexed {notebook_id}/{source_id}: {len(chunks)} chunks "
            f"via {batch.tier.value} ({batch.model}), {processing_time:.2f}s"
        )
        return ProcessResult(
            success=True,
            notebook_id=notebook_id,
            source_id=source_id,
            chunks_created=len(chunks),
            embeddings_generated=len(batch.vectors),
            embedding_model=batch.model,
            processing_time_seconds=processing_time,
        )

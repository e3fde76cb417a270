"""Retrieval orchestration: standard and agentic RAG queries.

Standard mode embeds the question once and returns the top results as
context. Agentic mode decomposes the question into sub-queries, searches for
each concurrently, merges the hits by maximum score, and lets a sufficiency
judge widen the context window a bounded number of times.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .config import ConfigService
from .embedding_service import TieredEmbeddingService
from .metrics import MetricsCollector, RetrievalMetrics
from .text_generation import SubQueryPlanner, SufficiencyJudge
from .types import Citation, RagResult, SearchResult
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TITLE = "Source"


def merge_results(result_lists: Iterable[Sequence[SearchResult]]) -> List[SearchResult]:
    """Merge per-query result lists keyed by chunk id.

    A chunk found by several queries keeps its maximum score. The merge is
    commutative, so the completion order of concurrent queries does not
    matter. Ties on score are broken by chunk id.

    Returns:
        Distinct results sorted by descending score
    """
    best: Dict[str, SearchResult] = {}
    for results in result_lists:
        for result in results:
            current = best.get(result.id)
            if current is None or result.score > current.score:
                best[result.id] = result
    return sorted(best.values(), key=lambda r: (-r.score, r.id))


def _title_for(source_id: str, title_map: Optional[Mapping[str, str]]) -> str:
    if title_map and title_map.get(source_id):
        return title_map[source_id]
    return DEFAULT_SOURCE_TITLE


def format_context(results: Sequence[SearchResult], title_map: Optional[Mapping[str, str]] = None) -> str:
    """Render results as ``[Source N: Title p.X]`` blocks separated by blank lines."""
    blocks = []
    for i, result in enumerate(results, start=1):
        page = f" p.{result.page_number}" if result.page_number else ""
        blocks.append(f"[Source {i}: {_title_for(result.source_id, title_map)}{page}]\n{result.text}")
    return "\n\n".join(blocks)


def build_citations(
    results: Sequence[SearchResult],
    title_map: Optional[Mapping[str, str]] = None,
    snippet_chars: int = 200,
) -> List[Citation]:
    """Build one citation per result with a truncated snippet."""
    return [
        Citation(
            source_id=result.source_id,
            source_title=_title_for(result.source_id, title_map),
            chunk_text=result.text[:snippet_chars],
            page_number=result.page_number,
        )
        for result in results
    ]


class RetrievalOrchestrator:
    """Runs standard and agentic retrieval against one notebook.

    Retrieval itself (embedding + vector search) is not retried here. If it
    fails entirely the exception propagates so the caller can fall back to
    a non-RAG path; assist calls (planning, judging) never fail a query.

    Attributes:
        embedding_service: Tiered embedding service
        vector_store: Vector store holding the notebook shards
        config_service: Source of retrieval limits
        planner: Sub-query planner (defaults to using the question alone)
        judge: Sufficiency judge (None disables refinement)
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        embedding_service: TieredEmbeddingService,
        vector_store: VectorStore,
        config_service: ConfigService,
        planner: Optional[SubQueryPlanner] = None,
        judge: Optional[SufficiencyJudge] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.config_service = config_service
        self.planner = planner or SubQueryPlanner(None)
        self.judge = judge
        self.metrics = metrics

    def query(
        self,
        notebook_id: str,
        question: str,
        source_ids: Optional[Sequence[str]] = None,
        title_map: Optional[Mapping[str, str]] = None,
        agentic: bool = True,
    ) -> RagResult:
        """Retrieve grounded context and citations for a question.

        Args:
            notebook_id: Notebook to search
            question: Natural-language question
            source_ids: Optional restriction to these sources
            title_map: Source id -> display title
            agentic: Use agentic multi-query retrieval (default: True)

        Returns:
            RagResult with context and citations (empty if nothing matched)
        """
        if agentic:
            return self.agentic_query(notebook_id, question, source_ids, title_map)
        return self.standard_query(notebook_id, question, source_ids, title_map)

    def standard_query(
        self,
        notebook_id: str,
        question: str,
        source_ids: Optional[Sequence[str]] = None,
        title_map: Optional[Mapping[str, str]] = None,
    ) -> RagResult:
        config = self.config_service.current()
        metrics = RetrievalMetrics(mode='standard', sub_queries=1)
        start = time.perf_counter()
        try:
            results = self._search(notebook_id, question, config.search_limit, source_ids)
        except Exception as e:
            self._finish(metrics, start, start, error=e)
            raise
        query_done = time.perf_counter()

        context = format_context(results, title_map)
        citations = build_citations(results, title_map, config.citation_snippet_chars)

        metrics.results_merged = len(results)
        metrics.context_chars = len(context)
        metrics.citations = len(citations)
        metrics.similarity_scores = [r.score for r in results]
        self._finish(metrics, start, query_done)
        return RagResult(context=context, citations=citations)

    def agentic_query(
        self,
        notebook_id: str,
        question: str,
        source_ids: Optional[Sequence[str]] = None,
        title_map: Optional[Mapping[str, str]] = None,
    ) -> RagResult:
        config = self.config_service.current()
        metrics = RetrievalMetrics(mode='agentic')
        start = time.perf_counter()

        # Step 1: Decompose the question (falls back to the question itself)
        queries = self.planner.plan(question)
        metrics.sub_queries = len(queries)
        logger.debug(f"Agentic retrieval with {len(queries)} sub-queries: {queries}")

        # Step 2: Search every sub-query and merge by max score
        search_start = time.perf_counter()
        try:
            result_lists, failures = self._fan_out(notebook_id, queries, config.subquery_limit,
                                                   source_ids, config.max_workers)
        except Exception as e:
            self._finish(metrics, start, search_start, error=e)
            raise
        query_done = time.perf_counter()
        metrics.failed_sub_queries = failures

        merged = merge_results(result_lists)
        metrics.results_merged = len(merged)

        # Step 3: Initial context
        window = min(config.search_limit, len(merged))
        context = format_context(merged[:window], title_map)

        # Step 4: Bounded refinement
        step = config.expanded_limit - config.search_limit
        for _ in range(max(0, config.max_refinements)):
            if len(context) < config.sufficiency_min_chars:
                logger.debug(f"Context too short for a sufficiency check ({len(context)} chars), using as-is")
                break
            if self.judge is None or step <= 0 or len(merged) <= window:
                break

            metrics.judge_called = True
            try:
                sufficient = self.judge.is_sufficient(question, context)
            except Exception as e:
                logger.warning(f"Sufficiency check failed, keeping current context: {e}")
                break
            if sufficient:
                break

            window = min(len(merged), window + step)
            context = format_context(merged[:window], title_map)
            metrics.expanded = True
            logger.debug(f"Context judged insufficient, expanded to {window} results")

        # Step 5: Citations from the initial window only
        citations = build_citations(merged[:config.search_limit], title_map,
                                    config.citation_snippet_chars)

        metrics.context_chars = len(context)
        metrics.citations = len(citations)
        metrics.similarity_scores = [r.score for r in merged[:window]]
        self._finish(metrics, start, query_done, search_start=search_start)
        return RagResult(context=context, citations=citations)

    def _search(
        self,
        notebook_id: str,
        text: str,
        limit: int,
        source_ids: Optional[Sequence[str]],
    ) -> List[SearchResult]:
        batch = self.embedding_service.embed_batch([text])
        return self.vector_store.search(
            notebook_id,
            batch.vectors[0],
            limit=limit,
            source_ids=source_ids,
            embedding_model=batch.model,
        )

    def _fan_out(
        self,
        notebook_id: str,
        queries: List[str],
        limit: int,
        source_ids: Optional[Sequence[str]],
        max_workers: int,
    ):
        """Run one embed+search per query concurrently.

        Returns:
            (successful result lists, number of failed queries)

        Raises:
            Exception: The first query's error if every query failed
        """
        if len(queries) == 1:
            return [self._search(notebook_id, queries[0], limit, source_ids)], 0

        result_lists: List[List[SearchResult]] = []
        errors: Dict[int, Exception] = {}

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(queries)))) as executor:
            future_to_index = {
                executor.submit(self._search, notebook_id, sub_query, limit, source_ids): index
                for index, sub_query in enumerate(queries)
            }
            for future in as_completed(future_to_index):
                index = future_to_index[future]
                try:
                    result_lists.append(future.result())
                except Exception as e:
                    logger.warning(f"Sub-query {index + 1}/{len(queries)} failed: {e}")
                    errors[index] = e

        if not result_lists:
            raise errors[min(errors)]
        return result_lists, len(errors)

    def _finish(
        self,
        metrics: RetrievalMetrics,
        start: float,
        query_done: float,
        search_start: Optional[float] = None,
        error: Optional[Exception] = None,
    ) -> None:
        if self.metrics is None:
            return
        metrics.query_time_ms = (query_done - (search_start or start)) * 1000
        metrics.total_time_ms = (time.perf_counter() - start) * 1000
        if error is not None:
            metrics.error_occurred = True
            metrics.error_message = str(error)
        self.metrics.record(metrics)

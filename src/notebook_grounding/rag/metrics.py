"""Retrieval quality metrics.

This module tracks and reports per-query metrics for standard and agentic
retrieval: how many sub-queries ran, how much context was assembled,
whether the window was expanded, and how long it all took.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RetrievalMetrics:
    """Metrics for a single retrieval query.

    Attributes:
        mode: Retrieval mode used ('standard' or 'agentic')
        sub_queries: Number of search queries issued
        failed_sub_queries: Number of sub-queries whose embed+search failed
        results_merged: Number of distinct chunks after merging
        context_chars: Length of the assembled context
        citations: Number of citations returned
        expanded: Whether the context window was widened
        judge_called: Whether the sufficiency judge was consulted
        query_time_ms: Time spent embedding and searching (milliseconds)
        total_time_ms: Total time including assist calls (milliseconds)
        similarity_scores: Scores of the results used as context
        error_occurred: Whether the query failed
        error_message: Error message if the query failed
        timestamp: When metrics were recorded
    """

    mode: str
    sub_queries: int = 0
    failed_sub_queries: int = 0
    results_merged: int = 0
    context_chars: int = 0
    citations: int = 0
    expanded: bool = False
    judge_called: bool = False
    query_time_ms: float = 0.0
    total_time_ms: float = 0.0
    similarity_scores: List[float] = field(default_factory=list)
    error_occurred: bool = False
    error_message: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict:
        """Convert metrics to dictionary for logging."""
        return {
            'mode': self.mode,
            'sub_queries': self.sub_queries,
            'failed_sub_queries': self.failed_sub_queries,
            'results_merged': self.results_merged,
            'context_chars': self.context_chars,
            'citations': self.citations,
            'expanded': self.expanded,
            'judge_called': self.judge_called,
            'query_time_ms': self.query_time_ms,
            'total_time_ms': self.total_time_ms,
            'avg_similarity': self._avg_similarity(),
            'max_similarity': max(self.similarity_scores) if self.similarity_scores else 0.0,
            'error_occurred': self.error_occurred,
            'error_message': self.error_message,
            'timestamp': self.timestamp,
        }

    def _avg_similarity(self) -> float:
        if not self.similarity_scores:
            return 0.0
        return sum(self.similarity_scores) / len(self.similarity_scores)


@dataclass
class AggregatedMetrics:
    """Aggregated metrics across multiple retrieval queries."""

    total_queries: int = 0
    standard_queries: int = 0
    agentic_queries: int = 0
    expansion_count: int = 0
    judge_calls: int = 0
    empty_context_count: int = 0
    error_count: int = 0
    avg_context_chars: float = 0.0
    avg_total_time_ms: float = 0.0
    p95_total_time_ms: float = 0.0

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'total_queries': self.total_queries,
            'standard_queries': self.standard_queries,
            'agentic_queries': self.agentic_queries,
            'expansion_rate': self.expansion_count / self.total_queries if self.total_queries > 0 else 0.0,
            'judge_calls': self.judge_calls,
            'empty_context_rate': self.empty_context_count / self.total_queries if self.total_queries > 0 else 0.0,
            'error_rate': self.error_count / self.total_queries if self.total_queries > 0 else 0.0,
            'avg_context_chars': self.avg_context_chars,
            'avg_total_time_ms': self.avg_total_time_ms,
            'p95_total_time_ms': self.p95_total_time_ms,
        }


class MetricsCollector:
    """Collects and aggregates retrieval metrics.

    Attributes:
        metrics_history: List of all recorded metrics
        enabled: Whether metrics collection is enabled
    """

    def __init__(self, enabled: bool = True):
        """Initialize metrics collector.

        Args:
            enabled: Whether to collect metrics (default: True)
        """
        self.enabled = enabled
        self.metrics_history: List[RetrievalMetrics] = []
        self._lock = threading.Lock()
        logger.debug(f"MetricsCollector initialized (enabled={enabled})")

    def record(self, metrics: RetrievalMetrics) -> RetrievalMetrics:
        """Record metrics for one query (no-op when disabled)."""
        if not self.enabled:
            return metrics

        with self._lock:
            self.metrics_history.append(metrics)

        logger.debug(
            f"Recorded {metrics.mode} query: {metrics.sub_queries} sub-queries, "
            f"{metrics.context_chars} context chars in {metrics.total_time_ms:.2f}ms"
        )
        return metrics

    def get_aggregated_metrics(self) -> AggregatedMetrics:
        """Calculate aggregated metrics across all queries.

        Returns:
            AggregatedMetrics object with aggregated statistics
        """
        with self._lock:
            history = list(self.metrics_history)
        if not history:
            return AggregatedMetrics()

        total_times = sorted(m.total_time_ms for m in history)
        p95_index = int(len(total_times) * 0.95)
        p95_time = total_times[p95_index] if p95_index < len(total_times) else total_times[-1]

        return AggregatedMetrics(
            total_queries=len(history),
            standard_queries=sum(1 for m in history if m.mode == 'standard'),
            agentic_queries=sum(1 for m in history if m.mode == 'agentic'),
            expansion_count=sum(1 for m in history if m.expanded),
            judge_calls=sum(1 for m in history if m.judge_called),
            empty_context_count=sum(1 for m in history if m.context_chars == 0),
            error_count=sum(1 for m in history if m.error_occurred),
            avg_context_chars=sum(m.context_chars for m in history) / len(history),
            avg_total_time_ms=sum(total_times) / len(total_times),
            p95_total_time_ms=p95_time,
        )

    def summary_lines(self) -> List[str]:
        """Human-readable summary of the collected metrics."""
        aggregated = self.get_aggregated_metrics()
        report = aggregated.to_dict()
        return [
            f"Queries: {aggregated.total_queries} "
            f"(standard {aggregated.standard_queries}, agentic {aggregated.agentic_queries})",
            f"Avg context: {aggregated.avg_context_chars:.0f} chars",
            f"Expansion rate: {report['expansion_rate'] * 100:.1f}%",
            f"Empty context rate: {report['empty_context_rate'] * 100:.1f}%",
            f"Error rate: {report['error_rate'] * 100:.1f}%",
            f"Avg time: {aggregated.avg_total_time_ms:.2f}ms (p95 {aggregated.p95_total_time_ms:.2f}ms)",
        ]

    def reset(self):
        """Reset all collected metrics."""
        with self._lock:
            self.metrics_history.clear()
        logger.info("Metrics history reset")

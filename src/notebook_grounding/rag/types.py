"""
Common data types for the retrieval engine.

These types define the interfaces between the chunker, embedding tiers,
vector store, retrieval orchestrator and recommender.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime


@dataclass(frozen=True)
class Chunk:
    """A bounded passage of a source document, the atomic unit of retrieval."""

    id: str
    source_id: str
    text: str
    chunk_index: int
    token_count_estimate: int
    page_number: Optional[int] = None

    def __post_init__(self):
        """Validate chunk."""
        if not self.id:
            raise ValueError("id cannot be empty")
        if not self.text or not self.text.strip():
            raise ValueError("text cannot be empty")
        if self.chunk_index < 0:
            raise ValueError("chunk_index must be non-negative")


@dataclass
class StoredChunk:
    """One chunk+vector entry of a persisted shard."""

    id: str
    source_id: str
    text: str
    vector: List[float]
    chunk_index: int
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk shard entry layout."""
        return {
            'id': self.id,
            'sourceId': self.source_id,
            'text': self.text,
            'vector': self.vector,
            'chunkIndex': self.chunk_index,
            'pageNumber': self.page_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredChunk":
        return cls(
            id=data['id'],
            source_id=data['sourceId'],
            text=data['text'],
            vector=data['vector'],
            chunk_index=data.get('chunkIndex', 0),
            page_number=data.get('pageNumber'),
        )


@dataclass
class SearchResult:
    """Result from a cosine similarity search."""

    id: str
    source_id: str
    text: str
    score: float
    chunk_index: int
    page_number: Optional[int] = None
    notebook_id: Optional[str] = None


@dataclass
class Citation:
    """A display-oriented reference back to the chunk that grounded an answer."""

    source_id: str
    source_title: str
    chunk_text: str
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceId': self.source_id,
            'sourceTitle': self.source_title,
            'chunkText': self.chunk_text,
            'pageNumber': self.page_number,
        }


@dataclass
class RagResult:
    """Grounded context plus the citations backing it."""

    context: str = ""
    citations: List[Citation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.context


@dataclass
class SourceRecommendation:
    """A related source found in another notebook."""

    notebook_id: str
    notebook_title: str
    source_id: str
    source_title: str
    score: float


@dataclass
class GlobalSearchHit:
    """A cross-notebook search hit with display titles."""

    notebook_id: str
    notebook_title: str
    source_id: str
    source_title: str
    text: str
    score: float
    page_number: Optional[int] = None


@dataclass
class ProcessResult:
    """Result from ingesting one source."""

    success: bool
    notebook_id: str
    source_id: str
    chunks_created: int = 0
    embeddings_generated: int = 0
    embedding_model: Optional[str] = None
    processing_time_seconds: float = 0.0
    error_message: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            'success': self.success,
            'notebook_id': self.notebook_id,
            'source_id': self.source_id,
            'chunks_created': self.chunks_created,
            'embeddings_generated': self.embeddings_generated,
            'embedding_model': self.embedding_model,
            'processing_time_seconds': self.processing_time_seconds,
            'error_message': self.error_message,
            'skipped': self.skipped,
            'skip_reason': self.skip_reason,
            'created_at': self.created_at,
        }

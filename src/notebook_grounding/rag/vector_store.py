"""Vector store implementation using per-source JSON shards.

This module persists one shard (chunk + vector records) per
(notebook, source) pair behind a small key-value backend interface and
performs brute-force cosine similarity search over one or many notebooks.
"""

import json
import logging
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import CorruptShardError
from .types import Chunk, SearchResult, StoredChunk


logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, 0.0 when either norm is 0.

    Raises:
        ValueError: If the vectors have different lengths
    """
    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    if vec_a.shape != vec_b.shape:
        raise ValueError(f"Vector dimensions differ: {vec_a.shape} vs {vec_b.shape}")

    denom = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if denom == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / denom)


def validate_id(value: str, kind: str = "id") -> str:
    """Ensure an id is usable as a single path component / namespace key."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{kind} cannot be empty")
    if value in (".", "..") or any(sep in value for sep in ("/", "\\", "\0")):
        raise ValueError(f"Invalid {kind}: {value!r}")
    return value


class ShardBackend(ABC):
    """Key-value storage for shards: namespace = notebook id, key = source id."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        """Load a shard, None if absent.

        Raises:
            CorruptShardError: If the stored shard cannot be parsed
        """

    @abstractmethod
    def put(self, namespace: str, key: str, shard: Dict[str, Any]) -> None:
        """Replace a shard atomically."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Remove a shard. Returns False if it did not exist."""

    @abstractmethod
    def delete_namespace(self, namespace: str) -> bool:
        """Remove every shard of a namespace. Returns False if it did not exist."""

    @abstractmethod
    def list_shards(self, namespace: str) -> List[str]:
        """Keys of the shards stored in a namespace, sorted."""

    @abstractmethod
    def list_namespaces(self) -> List[str]:
        """All namespaces holding shards, sorted."""


class JsonFileShardBackend(ShardBackend):
    """Stores each shard as ``<root>/<notebook_id>/<source_id>.json``.

    Writes go to a temporary file in the same directory which is then
    renamed over the target, so readers never observe a half-written shard.
    """

    SUFFIX = ".json"

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _namespace_dir(self, namespace: str) -> Path:
        return self.root / namespace

    def _shard_path(self, namespace: str, key: str) -> Path:
        return self._namespace_dir(namespace) / f"{key}{self.SUFFIX}"

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._shard_path(namespace, key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            raise CorruptShardError(f"Unreadable shard {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get('chunks'), list):
            raise CorruptShardError(f"Malformed shard {path}: missing 'chunks' list")
        return data

    def put(self, namespace: str, key: str, shard: Dict[str, Any]) -> None:
        path = self._shard_path(namespace, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write atomically (write to temp file, then rename)
        temp_file = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(shard, f)
            temp_file.replace(path)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise

    def delete(self, namespace: str, key: str) -> bool:
        path = self._shard_path(namespace, key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def delete_namespace(self, namespace: str) -> bool:
        directory = self._namespace_dir(namespace)
        if not directory.is_dir():
            return False
        shutil.rmtree(directory)
        return True

    def list_shards(self, namespace: str) -> List[str]:
        directory = self._namespace_dir(namespace)
        if not directory.is_dir():
            return []
        return sorted(
            p.name[:-len(self.SUFFIX)]
            for p in directory.iterdir()
            if p.is_file() and p.name.endswith(self.SUFFIX) and not p.name.startswith('.')
        )

    def list_namespaces(self) -> List[str]:
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())


class VectorStore:
    """Per-notebook vector store with brute-force cosine search.

    Shards are overwritten wholesale when a source is re-ingested. Writes to
    the same (notebook, source) shard are serialized; reads need no locking
    because shard replacement is atomic.

    Attributes:
        backend: Shard storage backend
    """

    FORMAT_VERSION = 1

    def __init__(self, persist_dir: Optional[str] = None, backend: Optional[ShardBackend] = None):
        """Initialize the vector store.

        Args:
            persist_dir: Root directory for JSON shards (ignored if backend is given)
            backend: Custom shard backend

        Raises:
            ValueError: If neither persist_dir nor backend is provided
        """
        if backend is None:
            if persist_dir is None:
                raise ValueError("persist_dir or backend is required")
            backend = JsonFileShardBackend(Path(persist_dir))
        self.backend = backend
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

        logger.info(f"VectorStore initialized: backend={type(backend).__name__}")

    def _shard_lock(self, notebook_id: str, source_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((notebook_id, source_id), threading.Lock())

    def add_documents(
        self,
        notebook_id: str,
        source_id: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Optional[Sequence[float]]],
        embedding_model: Optional[str] = None,
    ) -> int:
        """Write (or overwrite) the shard for one source.

        Chunks whose vector is missing or empty are left out of the shard and
        therefore excluded from search until re-embedded.

        Args:
            notebook_id: Notebook the source belongs to
            source_id: Source the chunks were cut from
            chunks: Chunks in document order
            vectors: One vector per chunk (None for chunks that failed to embed)
            embedding_model: Model that produced the vectors, recorded in the shard

        Returns:
            Number of entries written

        Raises:
            ValueError: If chunks and vectors don't match or ids are unsafe
        """
        validate_id(notebook_id, "notebook_id")
        validate_id(source_id, "source_id")
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Number of chunks ({len(chunks)}) must match number of vectors ({len(vectors)})"
            )

        entries = []
        for chunk, vector in zip(chunks, vectors):
            if vector is None or len(vector) == 0:
                continue
            entries.append(StoredChunk(
                id=chunk.id,
                source_id=source_id,
                text=chunk.text,
                vector=[float(v) for v in vector],
                chunk_index=chunk.chunk_index,
                page_number=chunk.page_number,
            ))

        skipped = len(chunks) - len(entries)
        if skipped:
            logger.warning(f"Skipping {skipped} chunks without vectors for source {source_id}")

        dimensions = {len(entry.vector) for entry in entries}
        if len(dimensions) > 1:
            raise ValueError(f"Mixed vector dimensions in one shard: {sorted(dimensions)}")

        shard = {
            'formatVersion': self.FORMAT_VERSION,
            'notebookId': notebook_id,
            'sourceId': source_id,
            'embeddingModel': embedding_model,
            'dimension': dimensions.pop() if dimensions else 0,
            'chunks': [entry.to_dict() for entry in entries],
        }

        with self._shard_lock(notebook_id, source_id):
            self.backend.put(notebook_id, source_id, shard)

        logger.info(f"Stored {len(entries)} chunks for source {source_id} in notebook {notebook_id}")
        return len(entries)

    def search(
        self,
        notebook_id: str,
        query_vector: Sequence[float],
        limit: int = 5,
        source_ids: Optional[Iterable[str]] = None,
        embedding_model: Optional[str] = None,
    ) -> List[SearchResult]:
        """Rank the chunks of one notebook by cosine similarity to a query vector.

        Args:
            notebook_id: Notebook to search
            query_vector: Query embedding
            limit: Number of results to return (default: 5)
            source_ids: Optional restriction to these sources
            embedding_model: If given, shards tagged with another model are skipped

        Returns:
            Top ``limit`` results, highest score first
        """
        source_filter = set(source_ids) if source_ids is not None else None
        results = self._scan([notebook_id], query_vector, source_filter, embedding_model)
        return self._top(results, limit)

    def search_multiple(
        self,
        notebook_ids: Sequence[str],
        query_vector: Sequence[float],
        limit: int = 5,
        embedding_model: Optional[str] = None,
    ) -> List[SearchResult]:
        """Rank chunks across several notebooks into one global list."""
        results = self._scan(list(notebook_ids), query_vector, None, embedding_model)
        return self._top(results, limit)

    def delete_source(self, notebook_id: str, source_id: str) -> bool:
        """Remove a source's shard. No-op if already absent."""
        validate_id(notebook_id, "notebook_id")
        validate_id(source_id, "source_id")
        with self._shard_lock(notebook_id, source_id):
            removed = self.backend.delete(notebook_id, source_id)
        if removed:
            logger.info(f"Deleted shard for source {source_id} in notebook {notebook_id}")
        return removed

    def delete_notebook(self, notebook_id: str) -> bool:
        """Remove all shards of a notebook. No-op if already absent."""
        validate_id(notebook_id, "notebook_id")
        removed = self.backend.delete_namespace(notebook_id)
        if removed:
            logger.info(f"Deleted all shards for notebook {notebook_id}")
        return removed

    def list_notebooks(self) -> List[str]:
        return self.backend.list_namespaces()

    def list_sources(self, notebook_id: str) -> List[str]:
        return self.backend.list_shards(notebook_id)

    def load_source_chunks(self, notebook_id: str, source_id: str) -> List[StoredChunk]:
        """Stored entries of one source in chunk order ([] if absent or unreadable)."""
        try:
            shard = self.backend.get(notebook_id, source_id)
        except CorruptShardError as e:
            logger.warning(f"Skipping corrupt shard: {e}")
            return []
        if shard is None:
            return []
        entries = self._parse_entries(shard, notebook_id, source_id)
        return sorted(entries, key=lambda entry: entry.chunk_index)

    def stats(self) -> Dict[str, Any]:
        """Get statistics about the stored shards.

        Returns:
            Dictionary with notebook, shard and chunk counts plus the
            embedding models present
        """
        stats = {
            "notebooks": 0,
            "shards": 0,
            "chunks": 0,
            "corrupt_shards": 0,
            "embedding_models": [],
        }
        models = set()
        for notebook_id in self.list_notebooks():
            stats["notebooks"] += 1
            for source_id in self.list_sources(notebook_id):
                stats["shards"] += 1
                try:
                    shard = self.backend.get(notebook_id, source_id)
                except CorruptShardError:
                    stats["corrupt_shards"] += 1
                    continue
                if shard is None:
                    continue
                stats["chunks"] += len(shard['chunks'])
                if shard.get('embeddingModel'):
                    models.add(shard['embeddingModel'])
        stats["embedding_models"] = sorted(models)
        return stats

    def _scan(
        self,
        notebook_ids: Sequence[str],
        query_vector: Sequence[float],
        source_filter: Optional[set],
        embedding_model: Optional[str],
    ) -> List[SearchResult]:
        query = np.asarray(query_vector, dtype=np.float64)
        if query.ndim != 1 or query.size == 0:
            raise ValueError("Query vector cannot be empty")
        query_norm = float(np.linalg.norm(query))

        results: List[SearchResult] = []
        for notebook_id in notebook_ids:
            validate_id(notebook_id, "notebook_id")
            for source_id in self.backend.list_shards(notebook_id):
                if source_filter is not None and source_id not in source_filter:
                    continue

                try:
                    shard = self.backend.get(notebook_id, source_id)
                    if shard is None:
                        continue
                    entries = self._parse_entries(shard, notebook_id, source_id)
                except CorruptShardError as e:
                    logger.warning(f"Skipping corrupt shard during search: {e}")
                    continue

                shard_model = shard.get('embeddingModel')
                if embedding_model and shard_model and shard_model != embedding_model:
                    logger.debug(
                        f"Skipping shard {notebook_id}/{source_id}: embedded with {shard_model}, "
                        f"query uses {embedding_model}"
                    )
                    continue

                comparable = [entry for entry in entries if len(entry.vector) == query.size]
                if len(comparable) < len(entries):
                    logger.warning(
                        f"Skipping {len(entries) - len(comparable)} entries in shard {notebook_id}/{source_id} "
                        f"with dimension other than {query.size}"
                    )
                if not comparable:
                    continue

                try:
                    matrix = np.asarray([entry.vector for entry in comparable], dtype=np.float64)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping corrupt shard during search: {notebook_id}/{source_id}: {e}")
                    continue
                denominators = np.linalg.norm(matrix, axis=1) * query_norm
                dots = matrix @ query
                scores = np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators > 0)

                for entry, score in zip(comparable, scores):
                    results.append(SearchResult(
                        id=entry.id,
                        source_id=entry.source_id,
                        text=entry.text,
                        score=float(score),
                        chunk_index=entry.chunk_index,
                        page_number=entry.page_number,
                        notebook_id=notebook_id,
                    ))

        return results

    @staticmethod
    def _parse_entries(shard: Dict[str, Any], notebook_id: str, source_id: str) -> List[StoredChunk]:
        try:
            entries = [StoredChunk.from_dict(item) for item in shard['chunks']]
        except (KeyError, TypeError, AttributeError) as e:
            raise CorruptShardError(f"Malformed entry in shard {notebook_id}/{source_id}: {e}") from e
        if any(not isinstance(entry.vector, list) for entry in entries):
            raise CorruptShardError(f"Malformed vector in shard {notebook_id}/{source_id}")
        return entries

    @staticmethod
    def _top(results: List[SearchResult], limit: int) -> List[SearchResult]:
        if limit <= 0:
            return []
        results.sort(key=lambda result: result.score, reverse=True)
        return results[:limit]

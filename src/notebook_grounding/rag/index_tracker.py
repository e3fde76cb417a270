"""
Index tracking module for the ingestion pipeline.

Tracks which sources have been indexed, with which embedding model, so that
unchanged sources can be skipped and sources embedded under a different
model can be found and re-embedded.
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


def content_digest(text: str, *params) -> str:
    """
    Stable digest of source text used to detect changed content.

    Extra params (chunking options such as page breaks) are folded in, so the
    same text chunked differently produces a different digest.
    """
    digest = hashlib.sha256(text.encode('utf-8'))
    for param in params:
        digest.update(b'\x00' + repr(param).encode('utf-8'))
    return digest.hexdigest()


class IndexTracker:
    """
    Tracks indexed sources per notebook.

    Stores metadata in a JSON file to persist across sessions. Entries are
    keyed by ``"<notebook_id>/<source_id>"``.
    """

    def __init__(self, tracker_file: Path):
        """
        Initialize index tracker.

        Args:
            tracker_file: Path to JSON file for storing tracking data
        """
        self.tracker_file = Path(tracker_file)
        self._index: Dict[str, Dict] = {}
        self._lock = threading.RLock()
        self._load_index()

    @staticmethod
    def _key(notebook_id: str, source_id: str) -> str:
        return f"{notebook_id}/{source_id}"

    def _load_index(self) -> None:
        """Load index from JSON file."""
        if self.tracker_file.exists():
            try:
                with open(self.tracker_file, 'r', encoding='utf-8') as f:
                    self._index = json.load(f)
                logger.debug(f"Loaded index tracker: {len(self._index)} entries")
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Failed to load index tracker: {e}. Starting fresh.")
                self._index = {}
        else:
            logger.debug("Index tracker file does not exist. Starting fresh.")
            self._index = {}

    def _save_index(self) -> None:
        """Save index to JSON file."""
        try:
            self.tracker_file.parent.mkdir(parents=True, exist_ok=True)

            # Write atomically (write to temp file, then rename)
            temp_file = self.tracker_file.with_suffix('.tmp')
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(self._index, f, indent=2)

            temp_file.replace(self.tracker_file)
            logger.debug(f"Saved index tracker: {len(self._index)} entries")
        except IOError as e:
            logger.error(f"Failed to save index tracker: {e}")

    def mark_indexed(
        self,
        notebook_id: str,
        source_id: str,
        embedding_model: str,
        dimension: int,
        chunks_created: int = 0,
        content_hash: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        """
        Mark a source as indexed.

        Args:
            notebook_id: Notebook identifier
            source_id: Source identifier
            embedding_model: Model that produced the stored vectors
            dimension: Vector dimensionality
            chunks_created: Number of chunks stored
            content_hash: Digest of the indexed text
            title: Optional display title
        """
        entry = {
            'notebook_id': notebook_id,
            'source_id': source_id,
            'embedding_model': embedding_model,
            'dimension': dimension,
            'chunks_created': chunks_created,
            'content_hash': content_hash,
            'indexed_at': datetime.utcnow().isoformat(),
        }
        if title:
            entry['title'] = title

        with self._lock:
            self._index[self._key(notebook_id, source_id)] = entry
            self._save_index()

        logger.info(f"Marked {notebook_id}/{source_id} as indexed ({chunks_created} chunks, {embedding_model})")

    def is_indexed(self, notebook_id: str, source_id: str) -> bool:
        return self._key(notebook_id, source_id) in self._index

    def needs_reindex(
        self,
        notebook_id: str,
        source_id: str,
        content_hash: Optional[str] = None,
        active_model: Optional[str] = None,
    ) -> bool:
        """
        Check if a source needs (re-)indexing.

        A source needs re-indexing if:
        - It's not in the index
        - Its content changed since last indexing
        - It was embedded with a different model than the active one

        Returns:
            True if the source needs (re)indexing
        """
        entry = self.get_entry(notebook_id, source_id)
        if entry is None:
            return True
        if content_hash is not None and entry.get('content_hash') != content_hash:
            logger.debug(f"Content changed since indexing: {notebook_id}/{source_id}")
            return True
        if active_model is not None and entry.get('embedding_model') != active_model:
            logger.debug(f"Embedding model changed since indexing: {notebook_id}/{source_id}")
            return True
        return False

    def stale_entries(self, active_model: str) -> List[Dict]:
        """
        List sources embedded under a model other than ``active_model``.

        Returns:
            Index entries that should be re-embedded
        """
        with self._lock:
            return [
                dict(entry) for entry in self._index.values()
                if entry.get('embedding_model') != active_model
            ]

    def entries(self, notebook_id: Optional[str] = None) -> List[Dict]:
        """All entries, optionally restricted to one notebook."""
        with self._lock:
            return [
                dict(entry) for entry in self._index.values()
                if notebook_id is None or entry.get('notebook_id') == notebook_id
            ]

    def remove_entry(self, notebook_id: str, source_id: str) -> bool:
        """
        Remove an index entry.

        Returns:
            True if entry was removed
        """
        with self._lock:
            key = self._key(notebook_id, source_id)
            if key not in self._index:
                return False
            del self._index[key]
            self._save_index()
        logger.info(f"Removed index entry: {key}")
        return True

    def remove_notebook(self, notebook_id: str) -> int:
        """
        Remove every entry of a notebook.

        Returns:
            Number of entries removed
        """
        with self._lock:
            keys = [k for k, e in self._index.items() if e.get('notebook_id') == notebook_id]
            for key in keys:
                del self._index[key]
            if keys:
                self._save_index()
        if keys:
            logger.info(f"Removed {len(keys)} index entries for notebook {notebook_id}")
        return len(keys)

    def get_entry(self, notebook_id: str, source_id: str) -> Optional[Dict]:
        return self._index.get(self._key(notebook_id, source_id))

    def get_stats(self) -> Dict:
        """
        Get statistics about the index.

        Returns:
            Dictionary with statistics
        """
        with self._lock:
            entries = list(self._index.values())

        models: Dict[str, int] = {}
        for entry in entries:
            model = entry.get('embedding_model') or 'unknown'
            models[model] = models.get(model, 0) + 1

        return {
            'total_sources_indexed': len(entries),
            'total_notebooks': len({entry.get('notebook_id') for entry in entries}),
            'total_chunks_created': sum(entry.get('chunks_created', 0) for entry in entries),
            'sources_by_model': models,
            'tracker_file': str(self.tracker_file),
            'tracker_exists': self.tracker_file.exists(),
        }

    def clear(self) -> None:
        """Clear all index entries."""
        with self._lock:
            self._index = {}
            self._save_index()
        logger.info("Cleared all index entries")

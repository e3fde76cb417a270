"""Tiered text embedding service.

This module converts text to vectors through an ordered fallback chain:
an on-device sentence-transformers model, a remote embedding API with
rate-limit backoff, and a deterministic hash fallback that cannot fail.
"""

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence

from sentence_transformers import SentenceTransformer
import torch

from .config import ConfigService, EmbeddingMode, RAGConfig
from .errors import ConfigurationError, ErrorClassifier, TransientProviderError
from .providers import ClientFactory, openai_factory


logger = logging.getLogger(__name__)


class EmbeddingTier(str, Enum):
    """One embedding-provider strategy in the fallback chain."""

    LOCAL = "local"
    REMOTE = "remote"
    HASH = "hash"


@dataclass
class EmbeddingBatch:
    """Vectors plus the tier and model that produced them."""

    vectors: List[List[float]]
    tier: EmbeddingTier
    model: str

    @property
    def dimension(self) -> int:
        return len(self.vectors[0]) if self.vectors else 0


def hash_embed(text: str, dimensions: int = 768) -> List[float]:
    """Deterministic hash-bucket embedding.

    Character codes are accumulated into ``dimensions`` buckets by position,
    then the vector is L2-normalized. Pure: the same text always yields the
    same vector. Empty text yields the zero vector.
    """
    vector = [0.0] * dimensions
    for position, char in enumerate(text):
        vector[position % dimensions] += ord(char) / 256

    norm = math.sqrt(sum(value * value for value in vector))
    if norm > 0:
        vector = [value / norm for value in vector]
    return vector


class HashEmbeddingProvider:
    """Availability floor of the chain: quality is poor but it never fails."""

    tier = EmbeddingTier.HASH

    def __init__(self, dimensions: int = 768):
        self.dimensions = dimensions

    @property
    def model_name(self) -> str:
        return f"hash-{self.dimensions}"

    def is_available(self) -> bool:
        return True

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [hash_embed(text, self.dimensions) for text in texts]


class LocalEmbeddingProvider:
    """On-device embeddings using sentence-transformers.

    The model is loaded lazily from the local cache only; it counts as
    available once it has been downloaded (see ``download``).

    Attributes:
        model_name: Name of the sentence-transformer model
        cache_dir: Directory to cache downloaded models
        device: Compute device (cuda, mps, or cpu)
    """

    tier = EmbeddingTier.LOCAL

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        cache_dir: Optional[str] = None,
        device: Optional[str] = None,
        batch_size: int = 32,
    ):
        """Initialize the local provider.

        Args:
            model_name: Sentence-transformer model name (default: all-MiniLM-L6-v2)
            cache_dir: Directory to cache models (default: None, uses default cache)
            device: Device to run model on (default: None, auto-detect)
            batch_size: Encoding batch size
        """
        self.model_name = model_name
        self.cache_dir = str(cache_dir) if cache_dir else None
        self.batch_size = batch_size
        self._model: Optional[SentenceTransformer] = None
        self._load_failed = False

        # Detect device if not specified
        if device is None:
            if torch.cuda.is_available():
                self.device = "cuda"
            elif torch.backends.mps.is_available():
                self.device = "mps"
            else:
                self.device = "cpu"
        else:
            self.device = device

        logger.info(f"LocalEmbeddingProvider initialized with model={model_name}, device={self.device}")

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the sentence-transformer model from the local cache.

        Returns:
            Loaded SentenceTransformer model

        Raises:
            RuntimeError: If the model is not downloaded or fails to load
        """
        if self._model is None:
            try:
                logger.info(f"Loading sentence-transformer model: {self.model_name}")
                self._model = SentenceTransformer(
                    self.model_name,
                    cache_folder=self.cache_dir,
                    device=self.device,
                    local_files_only=True,
                )
                self._load_failed = False
                logger.info(f"Model loaded successfully on device: {self.device}")
            except Exception as e:
                self._load_failed = True
                logger.warning(f"On-device model {self.model_name} not available: {e}")
                raise RuntimeError(f"Could not load embedding model: {e}") from e

        return self._model

    def is_available(self) -> bool:
        """Check whether the model is downloaded and loadable."""
        if self._model is not None:
            return True
        if self._load_failed:
            return False
        try:
            _ = self.model
            return True
        except RuntimeError:
            return False

    def download(self) -> bool:
        """Download the model into the cache and load it.

        Returns:
            True on success, False otherwise
        """
        try:
            logger.info(f"Downloading sentence-transformer model: {self.model_name}")
            self._model = SentenceTransformer(
                self.model_name,
                cache_folder=self.cache_dir,
                device=self.device,
            )
            self._load_failed = False
            return True
        except Exception as e:
            logger.error(f"Failed to download model {self.model_name}: {e}")
            return False

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate L2-normalized embeddings for a batch of texts.

        Raises:
            RuntimeError: If the model is unavailable or encoding fails
        """
        try:
            embeddings = self.model.encode(
                list(texts),
                batch_size=self.batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
                show_progress_bar=False,
            )
        except RuntimeError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate batch embeddings: {e}")
            raise RuntimeError(f"Batch embedding generation failed: {e}") from e

        return embeddings.tolist()

    def get_embedding_dim(self) -> int:
        """Get the dimensionality of embeddings produced by this model."""
        return self.model.get_sentence_embedding_dimension()


class RemoteEmbeddingProvider:
    """Remote embedding API tier.

    Texts are sent in batches; each batch is retried on rate-limit and
    timeout errors with exponential backoff (base delay doubling per
    attempt). Other errors are raised immediately.
    """

    tier = EmbeddingTier.REMOTE

    def __init__(
        self,
        config_service: ConfigService,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config_service = config_service
        self.client_factory = client_factory or openai_factory(config_service)
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return self.config_service.current().remote_model_name

    def is_configured(self) -> bool:
        return bool(self.config_service.current().remote_api_key)

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts through the remote API.

        Raises:
            ConfigurationError: If credentials are missing
            TransientProviderError: If rate limiting/timeouts outlast the retries
        """
        config = self.config_service.current()
        if not config.remote_api_key:
            raise ConfigurationError("Remote embedding API key not configured (set OPENAI_API_KEY)")

        client = self.client_factory.get()
        batch_size = max(1, config.remote_batch_size)
        results: List[List[float]] = []

        for start in range(0, len(texts), batch_size):
            batch = list(texts[start:start + batch_size])
            response = self._with_retry(
                lambda: client.embeddings.create(
                    model=config.remote_model_name,
                    input=batch,
                    dimensions=config.remote_dimensions,
                ),
                config,
            )
            for item in sorted(response.data, key=lambda d: d.index):
                results.append(list(item.embedding))

        logger.debug(f"Generated {len(results)} remote embeddings ({config.remote_model_name})")
        return results

    def _with_retry(self, call: Callable, config: RAGConfig):
        """Run a provider call, retrying transient failures with exponential backoff."""
        attempts = max(1, config.max_retries)
        for attempt in range(attempts):
            try:
                return call()
            except Exception as e:
                if not ErrorClassifier.is_transient(e):
                    raise
                if attempt == attempts - 1:
                    raise TransientProviderError(
                        f"Remote embedding failed after {attempts} attempts: {ErrorClassifier.classify(e)}"
                    ) from e
                wait_time = config.retry_base_delay * (2 ** attempt)
                logger.warning(
                    f"Remote embedding {ErrorClassifier.classify(e).lower()}, "
                    f"retry {attempt + 1}/{attempts - 1} in {wait_time:.1f}s"
                )
                self._sleep(wait_time)

        raise TransientProviderError("All retry attempts exhausted")


class TieredEmbeddingService:
    """Embeds text through the tier chain selected by the active config.

    Modes:
        auto: on-device model -> remote API -> hash fallback
        local: on-device model only (falls back to the chain if unavailable)
        remote: remote API only (falls back to hash on failure; missing
            credentials raise ConfigurationError)
    """

    def __init__(
        self,
        config_service: ConfigService,
        local: Optional[LocalEmbeddingProvider] = None,
        remote: Optional[RemoteEmbeddingProvider] = None,
        hash_provider: Optional[HashEmbeddingProvider] = None,
    ):
        self.config_service = config_service
        self._local = local
        self._local_fixed = local is not None
        self._remote = remote or RemoteEmbeddingProvider(config_service)
        self._hash = hash_provider

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, preserving order and length."""
        return self.embed_batch(texts).vectors

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query text (same as ``embed([text])[0]``)."""
        return self.embed_batch([text]).vectors[0]

    def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatch:
        """Embed texts and report which tier produced the vectors.

        Args:
            texts: Texts to embed

        Returns:
            EmbeddingBatch with one vector per input text

        Raises:
            ConfigurationError: In remote mode when credentials are missing
        """
        texts = list(texts)
        config = self.config_service.current()
        if not texts:
            tier = self.get_active_model()
            return EmbeddingBatch([], tier, self._model_name_for(tier, config))

        mode = config.embedding_mode

        if mode is EmbeddingMode.LOCAL:
            local = self._local_for(config)
            if local.is_available():
                batch = self._try(local, texts)
                if batch is not None:
                    return batch
            logger.warning("Local embedding mode requested but the on-device model is not available, falling back")
            return self._chain(texts, config, skip_local=True)

        if mode is EmbeddingMode.REMOTE:
            try:
                return self._run(self._remote, texts)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.warning(f"Remote embedding failed ({ErrorClassifier.classify(e)}), using hash fallback")
                return self._run(self._hash_for(config), texts)

        return self._chain(texts, config)

    def get_active_model(self) -> EmbeddingTier:
        """Report the tier the current mode would use first."""
        config = self.config_service.current()
        mode = config.embedding_mode

        if mode is EmbeddingMode.REMOTE:
            return EmbeddingTier.REMOTE
        if self._local_for(config).is_available():
            return EmbeddingTier.LOCAL
        if self._remote.is_configured():
            return EmbeddingTier.REMOTE
        return EmbeddingTier.HASH

    def active_model_name(self) -> str:
        """Model name of the tier reported by ``get_active_model``."""
        config = self.config_service.current()
        return self._model_name_for(self.get_active_model(), config)

    def download_local_model(self) -> bool:
        """Fetch the on-device model so the local tier becomes available."""
        return self._local_for(self.config_service.current()).download()

    def _chain(self, texts: List[str], config: RAGConfig, skip_local: bool = False) -> EmbeddingBatch:
        if not skip_local:
            local = self._local_for(config)
            if local.is_available():
                batch = self._try(local, texts)
                if batch is not None:
                    return batch

        try:
            return self._run(self._remote, texts)
        except ConfigurationError as e:
            logger.warning(f"Remote embedding tier not configured ({e}), using hash fallback")
        except Exception as e:
            logger.warning(f"Remote embedding failed ({ErrorClassifier.classify(e)}), using hash fallback")

        return self._run(self._hash_for(config), texts)

    def _try(self, provider, texts: List[str]) -> Optional[EmbeddingBatch]:
        try:
            return self._run(provider, texts)
        except Exception as e:
            logger.warning(f"{provider.tier.value} embedding tier failed: {e}")
            return None

    def _run(self, provider, texts: List[str]) -> EmbeddingBatch:
        vectors = provider.embed(texts)
        if len(vectors) != len(texts):
            raise RuntimeError(
                f"{provider.tier.value} tier returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return EmbeddingBatch(vectors=vectors, tier=provider.tier, model=provider.model_name)

    def _local_for(self, config: RAGConfig) -> LocalEmbeddingProvider:
        if self._local_fixed:
            return self._local
        if self._local is None or self._local.model_name != config.local_model_name:
            self._local = LocalEmbeddingProvider(
                model_name=config.local_model_name,
                cache_dir=config.model_cache_dir,
            )
        return self._local

    def _hash_for(self, config: RAGConfig) -> HashEmbeddingProvider:
        if self._hash is not None:
            return self._hash
        return HashEmbeddingProvider(config.hash_dimensions)

    def _model_name_for(self, tier: EmbeddingTier, config: RAGConfig) -> str:
        if tier is EmbeddingTier.LOCAL:
            return self._local_for(config).model_name
        if tier is EmbeddingTier.REMOTE:
            return self._remote.model_name
        return self._hash_for(config).model_name

"""Provider client construction and caching.

Provider SDK clients (remote embeddings, text generation) are built lazily
and cached by a ClientFactory. The cache is keyed by the config service
version plus the client-relevant settings, so a credential or model change
rebuilds the client on the next call.
"""

import logging
from typing import Any, Callable, Generic, Hashable, Optional, TypeVar

import anthropic
from openai import OpenAI

from .config import ConfigService, RAGConfig
from .errors import ConfigurationError


logger = logging.getLogger(__name__)

ClientT = TypeVar("ClientT")


class ClientFactory(Generic[ClientT]):
    """Lazily creates and caches one provider client.

    Attributes:
        name: Label used in log messages
    """

    def __init__(
        self,
        name: str,
        config_service: ConfigService,
        builder: Callable[[RAGConfig], ClientT],
        key_fn: Callable[[RAGConfig], Hashable],
    ):
        """Initialize the factory.

        Args:
            name: Label used in log messages
            config_service: Source of the active configuration
            builder: Creates a client from a config
            key_fn: Extracts the settings the client depends on
        """
        self.name = name
        self.config_service = config_service
        self._builder = builder
        self._key_fn = key_fn
        self._client: Optional[ClientT] = None
        self._key: Optional[Hashable] = None
        self._builds = 0

    @property
    def builds(self) -> int:
        """Number of clients created so far."""
        return self._builds

    def get(self) -> ClientT:
        """Return the cached client, rebuilding it if the config changed."""
        config = self.config_service.current()
        key = (self.config_service.version, self._key_fn(config))
        if self._client is None or key != self._key:
            logger.info(f"Creating {self.name} client (config version {self.config_service.version})")
            self._client = self._builder(config)
            self._key = key
            self._builds += 1
        return self._client

    def invalidate(self) -> None:
        """Drop the cached client so the next call rebuilds it."""
        self._client = None
        self._key = None


def build_openai_client(config: RAGConfig) -> OpenAI:
    """Create the remote embedding client.

    Raises:
        ConfigurationError: If no API key is configured
    """
    if not config.remote_api_key:
        raise ConfigurationError("Remote embedding API key not configured (set OPENAI_API_KEY)")
    # Retries are handled by the embedding tier with its own backoff policy
    return OpenAI(api_key=config.remote_api_key, timeout=config.request_timeout, max_retries=0)


def build_anthropic_client(config: RAGConfig) -> anthropic.Anthropic:
    """Create the text-generation client.

    Raises:
        ConfigurationError: If no API key is configured
    """
    if not config.generation_api_key:
        raise ConfigurationError(
            "Text-generation API key not configured (set ANTHROPIC_API_KEY or CLAUDE_API_KEY)"
        )
    return anthropic.Anthropic(api_key=config.generation_api_key, timeout=config.request_timeout)


def openai_factory(config_service: ConfigService) -> ClientFactory[Any]:
    return ClientFactory(
        "remote embedding",
        config_service,
        build_openai_client,
        lambda config: (config.remote_api_key, config.request_timeout),
    )


def anthropic_factory(config_service: ConfigService) -> ClientFactory[Any]:
    return ClientFactory(
        "text generation",
        config_service,
        build_anthropic_client,
        lambda config: (config.generation_api_key, config.request_timeout),
    )

"""Unit tests for provider client construction and caching."""

from unittest.mock import Mock, patch

import pytest

from notebook_grounding.rag.config import ConfigService, RAGConfig
from notebook_grounding.rag.errors import ConfigurationError
from notebook_grounding.rag.providers import (
    ClientFactory,
    build_anthropic_client,
    build_openai_client,
    openai_factory,
)


def make_factory(config_service):
    builder = Mock(side_effect=lambda config: object())
    factory = ClientFactory("test", config_service, builder, lambda config: config.remote_api_key)
    return factory, builder


class TestClientFactory:

    def test_caches_client(self):
        factory, builder = make_factory(ConfigService(RAGConfig(remote_api_key="k1")))

        first = factory.get()
        second = factory.get()

        assert first is second
        assert builder.call_count == 1
        assert factory.builds == 1

    def test_rebuilds_on_version_change(self):
        config_service = ConfigService(RAGConfig(remote_api_key="k1"))
        factory, builder = make_factory(config_service)
        first = factory.get()

        config_service.update(search_limit=4)

        assert factory.get() is not first
        assert builder.call_count == 2

    def test_rebuilds_when_credentials_change_in_env(self):
        loader = Mock(side_effect=[
            RAGConfig(remote_api_key="k1"),
            RAGConfig(remote_api_key="k1"),
            RAGConfig(remote_api_key="k2"),
        ])
        factory, builder = make_factory(ConfigService(loader=loader))

        first = factory.get()
        assert factory.get() is first
        assert factory.get() is not first
        assert builder.call_count == 2

    def test_invalidate(self):
        factory, builder = make_factory(ConfigService(RAGConfig(remote_api_key="k1")))
        factory.get()

        factory.invalidate()
        factory.get()

        assert builder.call_count == 2


class TestBuilders:

    def test_openai_requires_key(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            build_openai_client(RAGConfig())

    @patch('notebook_grounding.rag.providers.OpenAI')
    def test_openai_client_disables_sdk_retries(self, mock_openai):
        build_openai_client(RAGConfig(remote_api_key="sk-test", request_timeout=12.0))

        mock_openai.assert_called_once_with(api_key="sk-test", timeout=12.0, max_retries=0)

    def test_anthropic_requires_key(self):
        with pytest.raises(ConfigurationError):
            build_anthropic_client(RAGConfig())

    @patch('notebook_grounding.rag.providers.anthropic.Anthropic')
    def test_anthropic_client(self, mock_anthropic):
        build_anthropic_client(RAGConfig(generation_api_key="claude-test"))

        assert mock_anthropic.call_args.kwargs["api_key"] == "claude-test"

    @patch('notebook_grounding.rag.providers.OpenAI')
    def test_openai_factory(self, mock_openai):
        factory = openai_factory(ConfigService(RAGConfig(remote_api_key="sk-test")))

        assert factory.get() is mock_openai.return_value
        assert factory.get() is mock_openai.return_value
        mock_openai.assert_called_once()

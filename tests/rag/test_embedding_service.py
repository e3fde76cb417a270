"""Unit tests for the tiered embedding service."""

import math
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import Mock, patch

import numpy as np
import pytest

from notebook_grounding.rag.config import ConfigService, EmbeddingMode
from notebook_grounding.rag.embedding_service import (
    EmbeddingTier,
    HashEmbeddingProvider,
    LocalEmbeddingProvider,
    RemoteEmbeddingProvider,
    TieredEmbeddingService,
    hash_embed,
)
from notebook_grounding.rag.errors import ConfigurationError, TransientProviderError


def embeddings_response(texts, reverse=False):
    """Fake embeddings.create response: one 2-d vector per input text."""
    items = [
        SimpleNamespace(index=i, embedding=[float(len(text)), 1.0])
        for i, text in enumerate(texts)
    ]
    if reverse:
        items.reverse()
    return SimpleNamespace(data=items)


@pytest.fixture
def remote_client():
    client = Mock()
    client.embeddings.create.side_effect = lambda model, input, dimensions: embeddings_response(input)
    return client


@pytest.fixture
def remote_config_service(rag_config):
    return ConfigService(replace(rag_config, remote_api_key="sk-test"))


@pytest.fixture
def remote_provider(remote_config_service, remote_client):
    factory = Mock()
    factory.get.return_value = remote_client
    return RemoteEmbeddingProvider(remote_config_service, client_factory=factory, sleep=Mock())


@pytest.fixture
def available_local():
    local = Mock(spec=LocalEmbeddingProvider)
    local.tier = EmbeddingTier.LOCAL
    local.model_name = "all-MiniLM-L6-v2"
    local.is_available.return_value = True
    local.embed.side_effect = lambda texts: [[1.0, 0.0, 0.0] for _ in texts]
    return local


class TestHashEmbedding:
    """Tests for the deterministic hash fallback."""

    def test_pure(self):
        assert hash_embed("same text", 64) == hash_embed("same text", 64)

    def test_unit_norm(self):
        for text in ["a", "Paris is the capital of France.", "x" * 1000]:
            vector = hash_embed(text, 64)
            assert math.isclose(math.sqrt(sum(v * v for v in vector)), 1.0, rel_tol=1e-9)

    def test_empty_text_is_zero_vector(self):
        assert hash_embed("", 16) == [0.0] * 16

    def test_dimension(self):
        assert len(hash_embed("abc")) == 768
        assert HashEmbeddingProvider(32).model_name == "hash-32"

    def test_buckets_by_position(self):
        vector = hash_embed("ab", 4)
        a, b = ord("a") / 256, ord("b") / 256
        norm = math.sqrt(a * a + b * b)
        assert vector == pytest.approx([a / norm, b / norm, 0.0, 0.0])


class TestLocalEmbeddingProvider:
    """Tests for the on-device tier."""

    def test_init_custom_values(self):
        provider = LocalEmbeddingProvider(model_name="custom-model", cache_dir="/custom/cache", device="cpu")

        assert provider.model_name == "custom-model"
        assert provider.cache_dir == "/custom/cache"
        assert provider.device == "cpu"
        assert provider._model is None  # Lazy loading

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_lazy_model_loading_uses_local_files_only(self, mock_st):
        provider = LocalEmbeddingProvider(device="cpu")
        assert provider._model is None

        model = provider.model

        assert model is mock_st.return_value
        assert mock_st.call_args.kwargs["local_files_only"] is True

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_model_loading_failure(self, mock_st):
        mock_st.side_effect = OSError("not in cache")
        provider = LocalEmbeddingProvider(device="cpu")

        with pytest.raises(RuntimeError, match="Could not load embedding model"):
            _ = provider.model

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_unavailable_is_cached(self, mock_st):
        mock_st.side_effect = OSError("not in cache")
        provider = LocalEmbeddingProvider(device="cpu")

        assert provider.is_available() is False
        assert provider.is_available() is False
        mock_st.assert_called_once()

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_download_makes_available(self, mock_st):
        mock_st.side_effect = [OSError("not in cache"), Mock()]
        provider = LocalEmbeddingProvider(device="cpu")

        assert provider.is_available() is False
        assert provider.download() is True
        assert provider.is_available() is True
        assert "local_files_only" not in mock_st.call_args.kwargs

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_embed_returns_normalized_lists(self, mock_st):
        mock_model = Mock()
        mock_model.encode.return_value = np.array([[0.6, 0.8], [1.0, 0.0]])
        mock_st.return_value = mock_model

        vectors = LocalEmbeddingProvider(device="cpu").embed(["a", "b"])

        assert vectors == [[0.6, 0.8], [1.0, 0.0]]
        assert mock_model.encode.call_args.kwargs["normalize_embeddings"] is True

    @patch('notebook_grounding.rag.embedding_service.SentenceTransformer')
    def test_embed_failure(self, mock_st):
        mock_model = Mock()
        mock_model.encode.side_effect = Exception("Encoding error")
        mock_st.return_value = mock_model

        with pytest.raises(RuntimeError, match="Batch embedding generation failed"):
            LocalEmbeddingProvider(device="cpu").embed(["test"])


class TestRemoteEmbeddingProvider:
    """Tests for the remote tier."""

    def test_missing_key_is_configuration_error(self, config_service):
        provider = RemoteEmbeddingProvider(config_service, client_factory=Mock())

        assert provider.is_configured() is False
        with pytest.raises(ConfigurationError):
            provider.embed(["text"])

    def test_batches_of_100(self, remote_provider, remote_client):
        texts = [f"text {i}" for i in range(250)]

        vectors = remote_provider.embed(texts)

        assert len(vectors) == 250
        sizes = [len(call.kwargs["input"]) for call in remote_client.embeddings.create.call_args_list]
        assert sizes == [100, 100, 50]
        assert remote_client.embeddings.create.call_args.kwargs["dimensions"] == 768

    def test_restores_input_order(self, remote_provider, remote_client):
        remote_client.embeddings.create.side_effect = (
            lambda model, input, dimensions: embeddings_response(input, reverse=True)
        )

        vectors = remote_provider.embed(["a", "bbb"])

        assert vectors == [[1.0, 1.0], [3.0, 1.0]]

    def test_retries_rate_limit_with_backoff(self, remote_config_service, remote_client):
        remote_config_service.update(retry_base_delay=1.0)
        remote_client.embeddings.create.side_effect = [
            Exception("Error code: 429 - Too Many Requests"),
            Exception("rate limit exceeded"),
            embeddings_response(["x"]),
        ]
        sleep = Mock()
        factory = Mock()
        factory.get.return_value = remote_client
        provider = RemoteEmbeddingProvider(remote_config_service, client_factory=factory, sleep=sleep)

        assert provider.embed(["x"]) == [[1.0, 1.0]]
        assert [call.args[0] for call in sleep.call_args_list] == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self, remote_provider, remote_client):
        remote_client.embeddings.create.side_effect = Exception("Request timed out")

        with pytest.raises(TransientProviderError):
            remote_provider.embed(["x"])
        assert remote_client.embeddings.create.call_count == 3

    def test_non_transient_not_retried(self, remote_provider, remote_client):
        remote_client.embeddings.create.side_effect = ValueError("invalid input")

        with pytest.raises(ValueError):
            remote_provider.embed(["x"])
        assert remote_client.embeddings.create.call_count == 1


class TestTieredEmbeddingService:
    """Tests for tier selection and fallback."""

    def test_empty_input(self, hash_embedding_service, unavailable_local):
        assert hash_embedding_service.embed([]) == []
        unavailable_local.embed.assert_not_called()

    def test_auto_prefers_local(self, config_service, available_local):
        service = TieredEmbeddingService(config_service, local=available_local)

        batch = service.embed_batch(["a", "b"])

        assert batch.tier is EmbeddingTier.LOCAL
        assert batch.model == "all-MiniLM-L6-v2"
        assert batch.vectors == [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]

    def test_auto_local_failure_falls_to_remote(self, remote_config_service, available_local, remote_provider):
        available_local.embed.side_effect = RuntimeError("boom")
        service = TieredEmbeddingService(remote_config_service, local=available_local, remote=remote_provider)

        batch = service.embed_batch(["abc"])

        assert batch.tier is EmbeddingTier.REMOTE
        assert batch.vectors == [[3.0, 1.0]]

    def test_auto_without_credentials_uses_hash(self, hash_embedding_service):
        batch = hash_embedding_service.embed_batch(["abc"])

        assert batch.tier is EmbeddingTier.HASH
        assert batch.model == "hash-64"
        assert batch.vectors == [hash_embed("abc", 64)]

    def test_auto_remote_exhausted_uses_hash(self, remote_config_service, unavailable_local,
                                             remote_provider, remote_client):
        remote_client.embeddings.create.side_effect = Exception("429 Too Many Requests")
        service = TieredEmbeddingService(remote_config_service, local=unavailable_local, remote=remote_provider)

        batch = service.embed_batch(["abc"])

        assert batch.tier is EmbeddingTier.HASH
        assert remote_client.embeddings.create.call_count == 3

    def test_wrong_vector_count_falls_through(self, config_service, available_local):
        available_local.embed.side_effect = lambda texts: [[1.0]]
        service = TieredEmbeddingService(config_service, local=available_local)

        batch = service.embed_batch(["a", "b"])

        assert batch.tier is EmbeddingTier.HASH
        assert len(batch.vectors) == 2

    def test_embed_query_matches_embed(self, hash_embedding_service):
        text = "What is the capital of France?"
        assert hash_embedding_service.embed_query(text) == hash_embedding_service.embed([text])[0]

    def test_order_and_length_preserved(self, hash_embedding_service):
        texts = ["one", "two", "three"]
        assert hash_embedding_service.embed(texts) == [hash_embed(t, 64) for t in texts]

    def test_remote_forced_missing_credentials_raises(self, config_service, available_local):
        config_service.update(embedding_mode=EmbeddingMode.REMOTE)
        service = TieredEmbeddingService(config_service, local=available_local)

        with pytest.raises(ConfigurationError):
            service.embed(["x"])
        available_local.embed.assert_not_called()

    def test_remote_forced_failure_uses_hash_not_local(self, remote_config_service, available_local,
                                                       remote_provider, remote_client):
        remote_config_service.update(embedding_mode=EmbeddingMode.REMOTE)
        remote_client.embeddings.create.side_effect = ValueError("bad request")
        service = TieredEmbeddingService(remote_config_service, local=available_local, remote=remote_provider)

        batch = service.embed_batch(["x"])

        assert batch.tier is EmbeddingTier.HASH
        available_local.embed.assert_not_called()

    def test_local_forced_unavailable_falls_back_to_chain(self, remote_config_service, unavailable_local,
                                                          remote_provider):
        remote_config_service.update(embedding_mode=EmbeddingMode.LOCAL)
        service = TieredEmbeddingService(remote_config_service, local=unavailable_local, remote=remote_provider)

        batch = service.embed_batch(["x"])

        assert batch.tier is EmbeddingTier.REMOTE

    def test_local_forced_uses_local(self, config_service, available_local):
        config_service.update(embedding_mode=EmbeddingMode.LOCAL)
        service = TieredEmbeddingService(config_service, local=available_local)

        assert service.embed_batch(["x"]).tier is EmbeddingTier.LOCAL

    def test_get_active_model(self, config_service, remote_config_service, available_local, unavailable_local):
        assert TieredEmbeddingService(config_service, local=available_local).get_active_model() is EmbeddingTier.LOCAL
        assert TieredEmbeddingService(config_service, local=unavailable_local).get_active_model() is EmbeddingTier.HASH
        assert (
            TieredEmbeddingService(remote_config_service, local=unavailable_local).get_active_model()
            is EmbeddingTier.REMOTE
        )

    def test_active_model_name(self, hash_embedding_service):
        assert hash_embedding_service.active_model_name() == "hash-64"

    def test_reads_config_on_each_call(self, config_service, unavailable_local):
        service = TieredEmbeddingService(config_service, local=unavailable_local)
        assert len(service.embed_query("x")) == 64

        config_service.update(hash_dimensions=16)

        assert len(service.embed_query("x")) == 16

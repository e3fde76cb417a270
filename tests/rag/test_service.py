"""Unit tests for the NotebookRAGService facade."""

from unittest.mock import patch

import pytest

from notebook_grounding.rag.config import ConfigService
from notebook_grounding.rag.index_tracker import IndexTracker
from notebook_grounding.rag.service import NotebookRAGService
from notebook_grounding.rag.text_generation import AnthropicTextGenerator, LLMSufficiencyJudge


@pytest.fixture
def service(config_service, hash_embedding_service, vector_store, rag_config):
    return NotebookRAGService(
        config_service,
        embedding_service=hash_embedding_service,
        vector_store=vector_store,
        index_tracker=IndexTracker(rag_config.index_tracker_file),
    )


class TestConstruction:

    def test_no_assist_without_key(self, service):
        assert service.text_generator is None
        assert service.orchestrator.judge is None

    def test_anthropic_assist_with_key(self, rag_config, hash_embedding_service, vector_store):
        rag_config.generation_api_key = "claude-test"

        service = NotebookRAGService(ConfigService(rag_config), embedding_service=hash_embedding_service,
                                     vector_store=vector_store)

        assert isinstance(service.text_generator, AnthropicTextGenerator)
        assert isinstance(service.orchestrator.judge, LLMSufficiencyJudge)

    def test_injected_generator_gets_default_judge(self, config_service, hash_embedding_service,
                                                   vector_store, scripted_generator):
        generator = scripted_generator([])

        service = NotebookRAGService(config_service, embedding_service=hash_embedding_service,
                                     vector_store=vector_store, text_generator=generator)

        assert service.orchestrator.judge.generator is generator


class TestOperations:

    def test_chunk_embed_store_search(self, service):
        chunks = service.chunk("Rivers flow downhill. Glaciers carve valleys.", source_id="geo")
        vectors = service.embed([c.text for c in chunks])

        service.add_documents("nb", "geo", chunks, vectors, embedding_model="hash-64")
        results = service.search("nb", service.embed_query(chunks[0].text), limit=1)

        assert results[0].source_id == "geo"
        assert results[0].score == pytest.approx(1.0)
        assert service.search_multiple(["nb"], vectors[0], limit=1)[0].id == chunks[0].id

    def test_embed_query_matches_embed(self, service):
        assert service.embed_query("hello") == service.embed(["hello"])[0]

    def test_query_or_empty_swallows_retrieval_failure(self, service):
        with patch.object(service.orchestrator, 'query', side_effect=RuntimeError("store offline")):
            result = service.query_or_empty("nb", "anything")

        assert result.context == ""
        assert result.citations == []

    def test_query_propagates_failure(self, service):
        with patch.object(service.orchestrator, 'query', side_effect=RuntimeError("store offline")):
            with pytest.raises(RuntimeError):
                service.query("nb", "anything")

    def test_delete_source_and_notebook(self, service):
        service.ingest_source("nb", "a", "Alpha notes.")
        service.ingest_source("nb", "b", "Beta notes.")

        assert service.delete_source("nb", "a") is True
        assert service.vector_store.list_sources("nb") == ["b"]
        assert service.delete_notebook("nb") is True
        assert service.vector_store.list_notebooks() == []

    def test_status(self, service):
        service.ingest_source("nb", "a", "Alpha notes.")
        service.query("nb", "alpha")

        status = service.status()

        assert status['active_tier'] == 'hash'
        assert status['active_model'] == 'hash-64'
        assert status['tracker']['total_sources_indexed'] == 1
        assert status['queries']['total_queries'] == 1
        assert service.get_active_model().value == 'hash'

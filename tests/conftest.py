"""
Pytest configuration and fixtures for the notebook retrieval engine tests.
"""
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add src to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from notebook_grounding.rag.config import ConfigService, EmbeddingMode, RAGConfig  # noqa: E402
from notebook_grounding.rag.embedding_service import (  # noqa: E402
    EmbeddingTier,
    LocalEmbeddingProvider,
    TieredEmbeddingService,
)
from notebook_grounding.rag.vector_store import VectorStore  # noqa: E402


ENV_VARS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLAUDE_API_KEY",
    "RAG_EMBEDDING_MODE",
    "RAG_VECTOR_STORE_DIR",
    "RAG_INDEX_TRACKER_FILE",
    "RAG_CHUNK_SIZE",
    "RAG_CHUNK_OVERLAP",
    "RAG_MAX_RETRIES",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep provider credentials and RAG_* settings out of the tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def rag_config(tmp_path):
    """Config with on-disk state under tmp_path and small hash vectors."""
    return RAGConfig(
        embedding_mode=EmbeddingMode.AUTO,
        hash_dimensions=64,
        vector_store_dir=tmp_path / "vectors",
        index_tracker_file=tmp_path / "tracker.json",
        retry_base_delay=0.0,
    )


@pytest.fixture
def config_service(rag_config):
    return ConfigService(rag_config)


@pytest.fixture
def unavailable_local():
    """On-device tier that reports the model as not downloaded."""
    local = Mock(spec=LocalEmbeddingProvider)
    local.tier = EmbeddingTier.LOCAL
    local.model_name = "all-MiniLM-L6-v2"
    local.is_available.return_value = False
    return local


@pytest.fixture
def hash_embedding_service(config_service, unavailable_local):
    """Tiered service that always ends on the hash tier (no model, no credentials)."""
    return TieredEmbeddingService(config_service, local=unavailable_local)


@pytest.fixture
def vector_store(rag_config):
    return VectorStore(persist_dir=str(rag_config.vector_store_dir))


class ScriptedGenerator:
    """Text generator that replays canned responses (exceptions are raised)."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.prompts = []

    def generate_text(self, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class ScriptedJudge:
    """Sufficiency judge that replays canned verdicts (exceptions are raised)."""

    def __init__(self, verdicts):
        self.verdicts = list(verdicts)
        self.contexts = []

    def is_sufficient(self, question, context):
        self.contexts.append(context)
        verdict = self.verdicts.pop(0)
        if isinstance(verdict, Exception):
            raise verdict
        return verdict


@pytest.fixture
def scripted_generator():
    return ScriptedGenerator


@pytest.fixture
def scripted_judge():
    return ScriptedJudge

"""Notebook Grounding package exports."""

from .rag import NotebookRAGService, RAGConfig, load_config_from_env

__all__ = [
    "__version__",
    "NotebookRAGService",
    "RAGConfig",
    "load_config_from_env",
]

__version__ = "0.1.0"

"""Lectio - semantic retrieval and RAG context assembly."""

from lectio.rag.assembler import RAGContextAssembler
from lectio.rag.embedder import EmbeddingGenerator
from lectio.rag.vector_store import VectorStore

__version__ = "0.1.0"
__all__ = ["RAGContextAssembler", "EmbeddingGenerator", "VectorStore"]

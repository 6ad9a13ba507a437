"""
RAG (Retrieval-Augmented Generation) module: manual passage retrieval and
confidence-gated answer generation.

Provider adapters (retriever, vector_store, local_embedder) are imported from
their modules directly so the engine can be used without loading them.
"""

from .engine import RAGConfig, RetrievalConfidenceEngine, calculate_confidence

__all__ = [
    "RAGConfig",
    "RetrievalConfidenceEngine",
    "calculate_confidence",
]

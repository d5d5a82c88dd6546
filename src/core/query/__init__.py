"""
Query Processing
Retrieval-augmented answering over an agent's documents.
"""

from .rag_engine import RagQueryEngine

__all__ = ["RagQueryEngine"]

"""
Document ingestion: extract -> chunk -> embed -> index.
"""

from .chunking import ChunkingEngine
from .extraction import TextExtractor
from .pipeline import IngestionPipeline
from .stages import ChunkTextStage, ExtractTextStage, GenerateEmbeddingsStage, StoreVectorsStage

__all__ = [
    "ChunkingEngine",
    "TextExtractor",
    "IngestionPipeline",
    "ExtractTextStage",
    "ChunkTextStage",
    "GenerateEmbeddingsStage",
    "StoreVectorsStage",
]

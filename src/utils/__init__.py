"""
Utility functions for the document RAG pipeline.
"""

from .helpers import (
    clean_text,
    count_words,
    md5_hash,
    sha256_hash,
    chunk_point_id,
    preview_text,
    sanitize_filename,
)
from .logging import setup_logger, OperationLogger

__all__ = [
    # From helpers
    "clean_text",
    "count_words",
    "md5_hash",
    "sha256_hash",
    "chunk_point_id",
    "preview_text",
    "sanitize_filename",

    # From logging
    "setup_logger",
    "OperationLogger",
]

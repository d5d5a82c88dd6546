"""
Chunking engine.

Splits extracted text into bounded, overlapping chunks with the langchain
text splitters. Pure: the same text and options always give the same chunks.
"""

import logging
from typing import Dict, List, Optional

from langchain_text_splitters import MarkdownTextSplitter, RecursiveCharacterTextSplitter, TextSplitter

from src.core.exceptions import DocumentDataError
from src.models.document_models import Chunk, ChunkingResult, ChunkingStats
from src.models.enums import ChunkingStrategy
from src.utils.helpers import md5_hash

logger = logging.getLogger(__name__)

RECURSIVE_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ", ""]
FIXED_SEPARATORS = ["\n\n", "\n", " ", ""]

# Token strategy sizes are given in characters; roughly 4 characters per token
CHARS_PER_TOKEN = 4
TOKEN_ENCODING = "cl100k_base"

SMALL_TEXT_LENGTH = 2000
LARGE_TEXT_LENGTH = 50000

MIME_TYPE_STRATEGIES: Dict[str, ChunkingStrategy] = {
    "text/markdown": ChunkingStrategy.MARKDOWN,
    "text/plain": ChunkingStrategy.RECURSIVE,
    "application/pdf": ChunkingStrategy.RECURSIVE,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ChunkingStrategy.RECURSIVE,
    "application/msword": ChunkingStrategy.RECURSIVE,
    "application/json": ChunkingStrategy.FIXED,
    "text/csv": ChunkingStrategy.FIXED,
}


class ChunkingEngine:
    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 200,
                 min_chunk_length: int = 20, max_chunk_length: int = 4000):
        """
        Initialize the chunking engine.

        Args:
            chunk_size: Default target chunk size in characters
            chunk_overlap: Default overlap between neighbouring chunks
            min_chunk_length: Chunks shorter than this are dropped
            max_chunk_length: Chunks longer than this are kept but flagged
        """
        self.validate_sizes(chunk_size, chunk_overlap)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_chunk_length = min_chunk_length
        self.max_chunk_length = max_chunk_length

    @staticmethod
    def validate_sizes(chunk_size: int, chunk_overlap: int) -> None:
        if chunk_size <= 0:
            raise DocumentDataError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise DocumentDataError(
                f"chunk_overlap must be between 0 and chunk_size - 1, got {chunk_overlap} for size {chunk_size}"
            )

    @staticmethod
    def strategy_for(mime_type: Optional[str]) -> ChunkingStrategy:
        return MIME_TYPE_STRATEGIES.get(mime_type or "", ChunkingStrategy.RECURSIVE)

    @classmethod
    def optimal_strategy(cls, text: str, mime_type: Optional[str] = None) -> ChunkingStrategy:
        """Fixed for short texts, token-based for very long ones, else the MIME default."""
        if len(text) < SMALL_TEXT_LENGTH:
            return ChunkingStrategy.FIXED
        if len(text) > LARGE_TEXT_LENGTH:
            return ChunkingStrategy.TOKEN
        return cls.strategy_for(mime_type)

    def create_splitter(self, strategy: ChunkingStrategy, chunk_size: int, chunk_overlap: int) -> TextSplitter:
        if strategy == ChunkingStrategy.MARKDOWN:
            return MarkdownTextSplitter(chunk_size=chunk_size, chunk_overlap=chunk_overlap)

        if strategy == ChunkingStrategy.TOKEN:
            token_size = max(1, chunk_size // CHARS_PER_TOKEN)
            token_overlap = min(chunk_overlap // CHARS_PER_TOKEN, token_size - 1)
            return RecursiveCharacterTextSplitter.from_tiktoken_encoder(
                encoding_name=TOKEN_ENCODING,
                chunk_size=token_size,
                chunk_overlap=token_overlap,
                separators=RECURSIVE_SEPARATORS,
            )

        separators = FIXED_SEPARATORS if strategy == ChunkingStrategy.FIXED else RECURSIVE_SEPARATORS
        return RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=separators,
        )

    def chunk(self, text: str, strategy: Optional[ChunkingStrategy] = None, mime_type: Optional[str] = None,
              chunk_size: Optional[int] = None, chunk_overlap: Optional[int] = None) -> ChunkingResult:
        """
        Split text into chunks.

        Args:
            text: Extracted document text
            strategy: Explicit strategy; otherwise chosen from the MIME type
            mime_type: MIME type of the source document
            chunk_size: Overrides the default chunk size
            chunk_overlap: Overrides the default overlap

        Returns:
            Contiguously indexed chunks with offsets, hashes and statistics
        """
        chunk_size = chunk_size if chunk_size is not None else self.chunk_size
        chunk_overlap = chunk_overlap if chunk_overlap is not None else self.chunk_overlap
        self.validate_sizes(chunk_size, chunk_overlap)

        strategy = ChunkingStrategy(strategy) if strategy else self.strategy_for(mime_type)

        if not text or not text.strip():
            logger.warning("Nothing to chunk: text is empty")
            return ChunkingResult(
                chunks=[],
                strategy=strategy,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                stats=ChunkingStats(original_length=len(text or "")),
                warnings=["Text is empty"],
            )

        logger.info(f"Chunking {len(text)} characters with strategy {strategy.value} "
                    f"(size {chunk_size}, overlap {chunk_overlap})")

        splitter = self.create_splitter(strategy, chunk_size, chunk_overlap)
        pieces = splitter.split_text(text)

        # Anything longer than the requested size, or the hard maximum, is flagged
        limit = min(chunk_size, self.max_chunk_length)
        chunks: List[Chunk] = []
        warnings: List[str] = []
        dropped = 0
        search_from = 0
        last_start = 0

        for piece in pieces:
            start = text.find(piece, search_from)
            if start < 0:
                start = last_start
            start = max(start, last_start)
            last_start = start
            search_from = start + 1

            if len(piece.strip()) < self.min_chunk_length:
                dropped += 1
                logger.warning(f"Chunk too small ({len(piece.strip())} chars), skipping")
                continue

            over_limit = len(piece) > limit
            if over_limit:
                warnings.append(f"Chunk {len(chunks)} has {len(piece)} characters (limit {limit})")
                logger.warning(f"Chunk too large ({len(piece)} chars), keeping it flagged")

            chunks.append(Chunk(
                chunk_index=len(chunks),
                content=piece,
                content_hash=md5_hash(piece),
                start_offset=start,
                end_offset=start + len(piece),
                length=len(piece),
                strategy=strategy,
                method=f"langchain-{strategy.value}",
                over_limit=over_limit,
            ))

        if dropped:
            warnings.append(f"Dropped {dropped} chunk(s) shorter than {self.min_chunk_length} characters")

        lengths = [chunk.length for chunk in chunks]
        stats = ChunkingStats(
            total_chunks=len(chunks),
            original_length=len(text),
            average_chunk_length=round(sum(lengths) / len(lengths), 2) if lengths else 0.0,
            min_chunk_length=min(lengths) if lengths else 0,
            max_chunk_length=max(lengths) if lengths else 0,
            dropped_chunks=dropped,
            over_limit_chunks=sum(1 for chunk in chunks if chunk.over_limit),
        )

        logger.info(f"Chunking complete: {stats.total_chunks} chunks, {dropped} dropped, "
                    f"average length {stats.average_chunk_length}")
        return ChunkingResult(
            chunks=chunks,
            strategy=strategy,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            stats=stats,
            warnings=warnings,
        )

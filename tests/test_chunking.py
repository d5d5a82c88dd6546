"""
Tests for the chunking engine.
"""

import pytest

from src.core.exceptions import DocumentDataError
from src.core.ingestion import chunking
from src.core.ingestion.chunking import ChunkingEngine
from src.models.enums import ChunkingStrategy

PARAGRAPHS = [
    "The front brakes use ventilated discs with two-piston calipers on every trim level.",
    "Battery capacity is 75 kWh, of which 72 kWh are usable for driving in normal conditions.",
    "Tire pressure should be checked monthly and adjusted to the values on the door placard.",
    "The warranty covers defects in materials and workmanship for four years of ownership.",
]
TEXT = "\n\n".join(PARAGRAPHS)


@pytest.fixture
def engine():
    return ChunkingEngine(chunk_size=120, chunk_overlap=0, min_chunk_length=20, max_chunk_length=4000)


def test_empty_text_gives_no_chunks(engine):
    result = engine.chunk("   \n  ")

    assert result.chunks == []
    assert result.warnings == ["Text is empty"]
    assert result.stats.total_chunks == 0


def test_chunks_are_contiguous_and_bounded(engine):
    result = engine.chunk(TEXT, mime_type="text/plain")

    assert result.strategy == ChunkingStrategy.RECURSIVE
    assert [chunk.chunk_index for chunk in result.chunks] == list(range(len(result.chunks)))
    assert len(result.chunks) == len(PARAGRAPHS)
    for chunk in result.chunks:
        assert chunk.length == len(chunk.content) <= 120
        assert chunk.method == "langchain-recursive"
        assert not chunk.over_limit


def test_offsets_point_into_the_source(engine):
    result = engine.chunk(TEXT, mime_type="text/plain")

    starts = [chunk.start_offset for chunk in result.chunks]
    assert starts == sorted(starts)
    for chunk in result.chunks:
        assert TEXT[chunk.start_offset:chunk.end_offset] == chunk.content


def test_chunking_is_deterministic(engine):
    first = engine.chunk(TEXT, mime_type="text/plain")
    second = engine.chunk(TEXT, mime_type="text/plain")

    assert [chunk.content_hash for chunk in first.chunks] == [chunk.content_hash for chunk in second.chunks]
    assert first.stats == second.stats


def test_overlap_repeats_text_between_chunks():
    engine = ChunkingEngine(chunk_size=100, chunk_overlap=30, min_chunk_length=5)
    text = " ".join(f"word{index}" for index in range(80))

    result = engine.chunk(text, strategy=ChunkingStrategy.FIXED)

    assert len(result.chunks) > 1
    for previous, current in zip(result.chunks, result.chunks[1:]):
        assert current.start_offset < previous.end_offset


def test_short_chunks_are_dropped():
    engine = ChunkingEngine(chunk_size=90, chunk_overlap=0, min_chunk_length=30)
    text = PARAGRAPHS[0] + "\n\nToo short." + "\n\n" + PARAGRAPHS[1]

    result = engine.chunk(text, strategy=ChunkingStrategy.RECURSIVE)

    assert all("Too short" not in chunk.content for chunk in result.chunks)
    assert result.stats.dropped_chunks == 1
    assert [chunk.chunk_index for chunk in result.chunks] == [0, 1]


def test_oversized_chunks_are_flagged():
    engine = ChunkingEngine(chunk_size=200, chunk_overlap=0, min_chunk_length=5, max_chunk_length=50)

    result = engine.chunk(PARAGRAPHS[0] + " " + PARAGRAPHS[1], strategy=ChunkingStrategy.FIXED)

    assert result.chunks
    assert all(chunk.over_limit for chunk in result.chunks if chunk.length > 50)
    assert result.stats.over_limit_chunks >= 1
    assert any("limit 50" in warning for warning in result.warnings)


def test_token_chunks_longer_than_chunk_size_are_flagged(monkeypatch):
    """Test that token-sized chunks measured against the character size are flagged when they exceed it."""
    requested = []

    def word_token_splitter(cls, encoding_name, chunk_size, chunk_overlap, **kwargs):
        requested.append((encoding_name, chunk_size, chunk_overlap))
        return cls(chunk_size=chunk_size, chunk_overlap=chunk_overlap,
                   length_function=lambda text: len(text.split()), **kwargs)

    monkeypatch.setattr(chunking.RecursiveCharacterTextSplitter, "from_tiktoken_encoder",
                        classmethod(word_token_splitter))
    engine = ChunkingEngine(chunk_size=1000, chunk_overlap=0, min_chunk_length=20, max_chunk_length=4000)

    result = engine.chunk("information " * 2000, strategy=ChunkingStrategy.TOKEN)

    assert requested == [(chunking.TOKEN_ENCODING, 250, 0)]
    assert result.chunks
    assert all(chunk.length > 1000 for chunk in result.chunks)
    assert all(chunk.over_limit for chunk in result.chunks)
    assert result.stats.over_limit_chunks == len(result.chunks)
    assert any("limit 1000" in warning for warning in result.warnings)


def test_markdown_strategy_for_markdown_files():
    engine = ChunkingEngine(chunk_size=80, chunk_overlap=0, min_chunk_length=5)
    text = "# Brakes\n\nDisc brakes on all wheels.\n\n# Battery\n\nLithium-ion pack with liquid cooling."

    result = engine.chunk(text, mime_type="text/markdown")

    assert result.strategy == ChunkingStrategy.MARKDOWN
    assert result.chunks[0].method == "langchain-markdown"


def test_per_call_sizes_override_defaults(engine):
    result = engine.chunk(TEXT, chunk_size=1000, chunk_overlap=100, mime_type="text/plain")

    assert result.chunk_size == 1000
    assert result.chunk_overlap == 100
    assert len(result.chunks) == 1


@pytest.mark.parametrize("chunk_size,chunk_overlap", [(0, 0), (100, 100), (100, -1)])
def test_invalid_sizes_are_rejected(engine, chunk_size, chunk_overlap):
    with pytest.raises(DocumentDataError):
        engine.chunk(TEXT, chunk_size=chunk_size, chunk_overlap=chunk_overlap)


def test_optimal_strategy_by_length():
    assert ChunkingEngine.optimal_strategy("short text") == ChunkingStrategy.FIXED
    assert ChunkingEngine.optimal_strategy("x" * 60000) == ChunkingStrategy.TOKEN
    assert ChunkingEngine.optimal_strategy("x" * 5000, "text/markdown") == ChunkingStrategy.MARKDOWN
    assert ChunkingEngine.optimal_strategy("x" * 5000, "application/json") == ChunkingStrategy.FIXED


def test_stats_describe_chunks(engine):
    result = engine.chunk(TEXT, mime_type="text/plain")
    lengths = [chunk.length for chunk in result.chunks]

    assert result.stats.original_length == len(TEXT)
    assert result.stats.min_chunk_length == min(lengths)
    assert result.stats.max_chunk_length == max(lengths)

from supportrag.config import settings
from supportrag.models import SourceType
from supportrag.services.chunking import (
    build_chunk_specs,
    chunk_by_paragraphs,
    chunk_by_words,
    chunk_text,
    estimate_tokens,
    hash_text,
    max_tokens_for,
)


def test_estimate_tokens():
    assert estimate_tokens("") == 1
    assert estimate_tokens("one two three four five six seven eight nine ten") == 13


def test_structured_sources_are_never_split():
    text = " ".join(["word"] * 2000)
    assert chunk_text(SourceType.QBO_INVOICE, text) == [text]


def test_empty_text_has_no_chunks():
    assert chunk_text(SourceType.TICKET, "   ") == []
    assert build_chunk_specs(SourceType.TICKET, "") == []


def test_limits_per_source_type():
    assert max_tokens_for(SourceType.TICKET) == settings.chunk_tokens_ticket
    assert max_tokens_for(SourceType.EMAIL) == settings.chunk_tokens_email
    assert max_tokens_for(SourceType.SHOPIFY_ORDER) == settings.chunk_tokens_structured


def test_paragraphs_are_packed_until_the_limit():
    paragraphs = ["alpha beta gamma", "delta epsilon zeta", "eta theta iota"]
    # Each paragraph is 4 tokens; two fit in 8
    chunks = chunk_by_paragraphs("\n\n".join(paragraphs), max_tokens=8, overlap_tokens=0)
    assert chunks == ["alpha beta gamma\n\ndelta epsilon zeta", "eta theta iota"]


def test_oversized_paragraph_is_split_into_overlapping_windows():
    words = [f"w{i}" for i in range(10)]
    chunks = chunk_by_words(words, max_tokens=4, overlap_tokens=1)
    assert chunks == ["w0 w1 w2 w3", "w3 w4 w5 w6", "w6 w7 w8 w9"]


def test_chunk_specs_are_indexed_and_hashed():
    text = "\n\n".join(" ".join(["word"] * 200) for _ in range(3))
    specs = build_chunk_specs(SourceType.TICKET, text)

    assert len(specs) > 1
    assert [s.index for s in specs] == list(range(len(specs)))
    assert all(s.count == len(specs) for s in specs)
    assert all(s.chunk_hash == hash_text(s.text) for s in specs)


def test_chunking_is_deterministic():
    text = "First paragraph.\n\nSecond paragraph."
    first = build_chunk_specs(SourceType.EMAIL, text)
    second = build_chunk_specs(SourceType.EMAIL, text)
    assert [s.chunk_hash for s in first] == [s.chunk_hash for s in second]

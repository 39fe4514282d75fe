import hashlib
import math
import re

from pydantic import BaseModel

from supportrag.config import settings
from supportrag.models import SourceType
from supportrag.services.cleaning import normalize_whitespace

# Record summaries are short and self-contained; they are never split
STRUCTURED_SOURCE_TYPES = frozenset(
    {
        SourceType.QBO_INVOICE,
        SourceType.QBO_ESTIMATE,
        SourceType.QBO_CUSTOMER,
        SourceType.SHOPIFY_ORDER,
        SourceType.SHOPIFY_CUSTOMER,
        SourceType.AMAZON_ORDER,
        SourceType.SHIPSTATION_SHIPMENT,
        SourceType.AMAZON_SHIPMENT,
        SourceType.ORDER,
    }
)

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


class ChunkSpec(BaseModel):
    """Specification for a single chunk of source content."""

    index: int
    count: int
    text: str
    chunk_hash: str
    token_count: int


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1.3 tokens per whitespace-delimited word."""
    words = len(text.split())
    return max(1, math.ceil(words * 1.3))


def max_tokens_for(source_type: SourceType) -> int:
    limits = {
        SourceType.TICKET: settings.chunk_tokens_ticket,
        SourceType.TICKET_COMMENT: settings.chunk_tokens_ticket_comment,
        SourceType.EMAIL: settings.chunk_tokens_email,
        SourceType.INTERACTION: settings.chunk_tokens_interaction,
    }
    if source_type in STRUCTURED_SOURCE_TYPES:
        return settings.chunk_tokens_structured
    return limits.get(source_type, settings.chunk_tokens_ticket)


def chunk_by_words(words: list[str], max_tokens: int, overlap_tokens: int) -> list[str]:
    """Slide a window of max_tokens words, stepping back overlap_tokens each time."""
    chunks = []
    start = 0
    while start < len(words):
        end = min(len(words), start + max_tokens)
        piece = " ".join(words[start:end]).strip()
        if piece:
            chunks.append(piece)
        if end >= len(words):
            break
        start = max(start + 1, end - overlap_tokens)
    return chunks


def chunk_by_paragraphs(text: str, max_tokens: int, overlap_tokens: int) -> list[str]:
    """
    Pack whole paragraphs into chunks of at most max_tokens.

    A paragraph that alone exceeds the limit flushes the current chunk and is
    split into overlapping word windows.
    """
    paragraphs = [normalize_whitespace(p) for p in PARAGRAPH_BREAK.split(text)]
    paragraphs = [p for p in paragraphs if p]

    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0

    def flush() -> None:
        nonlocal current, current_tokens
        if current:
            chunks.append("\n\n".join(current).strip())
        current = []
        current_tokens = 0

    for paragraph in paragraphs:
        tokens = estimate_tokens(paragraph)
        if tokens > max_tokens:
            flush()
            chunks.extend(chunk_by_words(paragraph.split(), max_tokens, overlap_tokens))
            continue

        if current and current_tokens + tokens > max_tokens:
            flush()

        current.append(paragraph)
        current_tokens += tokens

    flush()
    return chunks


def chunk_text(source_type: SourceType, text: str) -> list[str]:
    """Split cleaned source content using the limits for its source type."""
    normalized = normalize_whitespace(text or "")
    if not normalized:
        return []

    if source_type in STRUCTURED_SOURCE_TYPES:
        return [normalized]

    return chunk_by_paragraphs(
        normalized, max_tokens_for(source_type), settings.chunk_overlap_tokens
    )


def build_chunk_specs(source_type: SourceType, text: str) -> list[ChunkSpec]:
    pieces = chunk_text(source_type, text)
    return [
        ChunkSpec(
            index=i,
            count=len(pieces),
            text=piece,
            chunk_hash=hash_text(piece),
            token_count=estimate_tokens(piece),
        )
        for i, piece in enumerate(pieces)
    ]

"""Text cleaning for ticket, email and structured record content."""

import re

# Reply/forward boundaries, checked top-down; everything from the first hit is dropped
REPLY_SPLIT_PATTERNS = [
    re.compile(r"^\s*On\s.+?wrote:\s*$", re.I),
    re.compile(r"^\s*From:\s.+", re.I),
    re.compile(r"^\s*Sent:\s.+", re.I),
    re.compile(r"^\s*To:\s.+", re.I),
    re.compile(r"^\s*Subject:\s.+", re.I),
    re.compile(r"^\s*-{2,}\s*Original Message\s*-{2,}\s*$", re.I),
    re.compile(r"^\s*---+\s*Forwarded message\s*---+\s*$", re.I),
    re.compile(r"^\s*Begin forwarded message\s*:?\s*$", re.I),
    re.compile(r"^\s*Forwarded message\s*:?\s*$", re.I),
    re.compile(r"^\s*Auto(?:matic)?\s*reply\s*:?\s*$", re.I),
]

SIGNATURE_MARKERS = [
    re.compile(r"^\s*--\s*$"),
    re.compile(r"^\s*__+\s*$"),
    re.compile(r"^\s*thanks[,!]?\s*$", re.I),
    re.compile(r"^\s*best[\s,]*$", re.I),
    re.compile(r"^\s*regards[\s,]*$", re.I),
    re.compile(r"^\s*sent from my\s", re.I),
    re.compile(r"^\s*confidentiality notice", re.I),
    re.compile(r"^\s*this email and any attachments", re.I),
    re.compile(r"^\s*disclaimer:", re.I),
]

# Signatures are only looked for near the end of a message
SIGNATURE_SCAN_LINES = 15

AUTO_REPLY_LINES = [
    re.compile(r"^\s*out of office", re.I),
    re.compile(r"^\s*i am currently out of the office", re.I),
    re.compile(r"^\s*this is an automated message", re.I),
]

QUOTED_LINE = re.compile(r"^\s*>")

HTML_BREAK = re.compile(r"<\s*br\s*/?>", re.I)
HTML_PARAGRAPH = re.compile(r"<\s*/?p\s*>", re.I)
HTML_TAG = re.compile(r"<[^>]*>")

HTML_ENTITIES = [
    (re.compile(r"&nbsp;", re.I), " "),
    (re.compile(r"&amp;", re.I), "&"),
    (re.compile(r"&lt;", re.I), "<"),
    (re.compile(r"&gt;", re.I), ">"),
]


def normalize_whitespace(text: str) -> str:
    """Normalize line endings, tabs, non-breaking spaces and runs of blanks."""
    text = re.sub(r"\r\n?", "\n", text)
    text = text.replace("\t", " ").replace("\u00a0", " ")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r" {2,}", " ", text)
    return text.strip()


def strip_html(text: str) -> str:
    """Turn breaks and paragraphs into newlines, drop tags, unescape common entities."""
    text = HTML_BREAK.sub("\n", text)
    text = HTML_PARAGRAPH.sub("\n", text)
    text = HTML_TAG.sub("", text)
    for pattern, replacement in HTML_ENTITIES:
        text = pattern.sub(replacement, text)
    return text


def _strip_quoted_lines(lines: list[str]) -> list[str]:
    return [line for line in lines if not QUOTED_LINE.match(line)]


def _split_at_reply_boundary(lines: list[str]) -> list[str]:
    for i, line in enumerate(lines):
        if any(p.search(line) for p in REPLY_SPLIT_PATTERNS):
            return lines[:i]
    return lines


def _strip_auto_reply_lines(lines: list[str]) -> list[str]:
    return [line for line in lines if not any(p.search(line) for p in AUTO_REPLY_LINES)]


def _truncate_at_signature(lines: list[str]) -> list[str]:
    start = max(0, len(lines) - SIGNATURE_SCAN_LINES)
    for i in range(start, len(lines)):
        if any(p.search(lines[i]) for p in SIGNATURE_MARKERS):
            return [line for line in lines[:i] if line.strip()]
    return lines


def clean_email_text(text: str | None) -> str:
    """
    Reduce an email body to the author's own words.

    Quoted lines, the previous message below a reply/forward boundary,
    auto-reply banners and a trailing signature are removed.
    """
    raw = normalize_whitespace(strip_html(text or ""))
    if not raw:
        return ""

    lines = raw.split("\n")
    lines = _strip_quoted_lines(lines)
    lines = _split_at_reply_boundary(lines)
    lines = _strip_auto_reply_lines(lines)
    lines = _truncate_at_signature(lines)

    return normalize_whitespace("\n".join(lines))


def clean_ticket_text(text: str | None) -> str:
    return normalize_whitespace(strip_html(text or ""))


def clean_structured_text(text: str | None) -> str:
    return normalize_whitespace(text or "")

"""Small text helpers for previews and display."""

from __future__ import annotations

PREVIEW_CHARS = 200


def truncate(text: str | None, max_chars: int) -> str:
    """Return at most ``max_chars`` characters of ``text``."""
    if not text:
        return ""
    return text[:max_chars]


def preview(text: str | None, max_chars: int = PREVIEW_CHARS, *, ellipsis: bool = False) -> str:
    """Short preview used in search listings."""
    snippet = truncate(text, max_chars)
    if ellipsis and text and len(text) > max_chars:
        snippet += "..."
    return snippet


def one_line(text: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return " ".join(text.split())

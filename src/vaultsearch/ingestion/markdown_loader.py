"""Markdown note loading and front-matter parsing.

Parsing is fail-soft: a malformed front-matter block never raises, the whole
text is used as the body and a :class:`ParseWarning` is attached to the
result instead.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from vaultsearch.errors import InvalidPath, ParseWarning
from vaultsearch.models import Document, FrontmatterValue, ParsedNote, ParseResult
from vaultsearch.utils.paths import is_path_safe

LOGGER = logging.getLogger(__name__)

UNTITLED = "Untitled"

_FRONTMATTER = re.compile(r"\A---\r?\n(?P<block>.*?)^---\r?$\n?", re.MULTILINE | re.DOTALL)
_INLINE_TAG = re.compile(r"#[\w-]+")


def _strip_quotes(value: str) -> str:
    return value.strip().replace('"', "")


def _parse_value(raw: str) -> FrontmatterValue:
    value = raw.strip()
    if value.startswith("[") and value.endswith("]"):
        items = (_strip_quotes(item) for item in value[1:-1].split(","))
        return [item for item in items if item]
    return _strip_quotes(value)


def parse_frontmatter(block: str) -> Dict[str, FrontmatterValue]:
    """Parse ``key: value`` lines; lines without a key are ignored."""
    frontmatter: Dict[str, FrontmatterValue] = {}
    for line in block.splitlines():
        colon = line.find(":")
        if colon <= 0:
            continue
        key = line[:colon].strip()
        if not key:
            continue
        frontmatter[key] = _parse_value(line[colon + 1 :])
    return frontmatter


def split_frontmatter(text: str) -> ParseResult[tuple[Optional[Dict[str, FrontmatterValue]], str]]:
    """Separate the front-matter block from the body."""
    match = _FRONTMATTER.match(text)
    if match is None:
        if text.startswith("---\n") or text.startswith("---\r\n"):
            warning = ParseWarning("front-matter block is not terminated")
            return ParseResult((None, text), warning)
        return ParseResult((None, text))
    return ParseResult((parse_frontmatter(match.group("block")), text[match.end() :]))


def extract_tags(body: str, frontmatter: Optional[Dict[str, FrontmatterValue]] = None) -> List[str]:
    """Union of front-matter tags and inline ``#tag`` markers, first-seen order."""
    tags: Dict[str, None] = {}
    if frontmatter and frontmatter.get("tags"):
        fm_tags = frontmatter["tags"]
        for tag in fm_tags if isinstance(fm_tags, list) else [fm_tags]:
            if tag:
                tags[tag] = None
    for match in _INLINE_TAG.findall(body):
        tags[match[1:]] = None
    return list(tags)


def derive_title(
    path: str | None, frontmatter: Optional[Dict[str, FrontmatterValue]] = None
) -> str:
    title = frontmatter.get("title") if frontmatter else None
    if isinstance(title, str) and title:
        return title
    if path:
        stem = PurePosixPath(path).stem
        if stem:
            return stem
    return UNTITLED


def parse_document(text: str, path: str | None = None) -> ParseResult[ParsedNote]:
    """Split raw note text into front-matter, body, title and tags."""
    split = split_frontmatter(text)
    frontmatter, body = split.value
    if split.diagnostic is not None:
        LOGGER.warning("Ignoring front-matter in %s: %s", path or "<text>", split.diagnostic)
    note = ParsedNote(
        frontmatter=frontmatter,
        body=body,
        title=derive_title(path, frontmatter),
        tags=extract_tags(body, frontmatter),
    )
    return ParseResult(note, split.diagnostic)


def _isoformat(timestamp: float) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def load_document(vault_root: Path, relative_path: str) -> ParseResult[Document]:
    """Read a note from the vault and build its :class:`Document`.

    Raises ``InvalidPath`` for paths escaping the vault and ``OSError`` for
    unreadable files; front-matter problems only produce a diagnostic.
    """
    if not is_path_safe(vault_root, relative_path):
        raise InvalidPath(relative_path, "path escapes the vault directory")

    full_path = Path(vault_root) / relative_path
    text = full_path.read_text(encoding="utf-8")
    stat = full_path.stat()
    created = getattr(stat, "st_birthtime", None) or stat.st_ctime

    parsed = parse_document(text, relative_path)
    note = parsed.value
    document = Document(
        path=relative_path,
        title=note.title,
        body=note.body,
        tags=note.tags,
        frontmatter=note.frontmatter,
        created_at=_isoformat(created),
        modified_at=_isoformat(stat.st_mtime),
    )
    return ParseResult(document, parsed.diagnostic)

"""Relative note path validation.

The sanitized path is both the content-store key and the seed of the vector
id, so the same input must always produce the same output (or the same
error).
"""

from __future__ import annotations

import re
from pathlib import Path

from vaultsearch.errors import InvalidPath

MAX_PATH_BYTES = 255
BLOCKED_PREFIXES = ("/", "~", "..", ".")

_LEADING_JUNK = re.compile(r"^[/.]+")
_REPEATED_SEPARATORS = re.compile(r"/+")
_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"|?*\\]')


def _trim_blocked_prefixes(path: str) -> str:
    trimmed = True
    while trimmed:
        trimmed = False
        for prefix in BLOCKED_PREFIXES:
            if path.startswith(prefix):
                path = path[len(prefix) :]
                trimmed = True
    return path


def sanitize_path(raw_path: str) -> str:
    """Normalize a relative note path or raise :class:`InvalidPath`."""
    if not isinstance(raw_path, str):
        raise InvalidPath(repr(raw_path), "path must be a string")

    sanitized = raw_path.replace("\0", "")
    sanitized = sanitized.replace("..", "")
    sanitized = sanitized.replace(".//", "")
    sanitized = _LEADING_JUNK.sub("", sanitized)
    sanitized = _REPEATED_SEPARATORS.sub("/", sanitized)
    if sanitized.endswith("/"):
        sanitized = sanitized[:-1]

    if len(sanitized.encode("utf-8")) > MAX_PATH_BYTES:
        raise InvalidPath(raw_path, f"path too long (max {MAX_PATH_BYTES} bytes)")

    sanitized = _trim_blocked_prefixes(sanitized)

    if _UNSAFE_CHARS.search(sanitized):
        raise InvalidPath(raw_path, "path contains invalid characters")
    if not sanitized:
        raise InvalidPath(raw_path, "path is empty after sanitizing")
    return sanitized


def is_path_safe(base_dir: Path, relative_path: str) -> bool:
    """Return True if ``relative_path`` resolves inside ``base_dir``."""
    if "\x00" in relative_path:
        return False
    base = base_dir.resolve()
    try:
        target = (base / relative_path).resolve()
    except (OSError, ValueError):
        return False
    return target == base or base in target.parents

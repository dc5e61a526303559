"""Utility helpers for working with note files and hashes."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterator, Set

NOTE_SUFFIX = ".md"
SKIPPED_DIRS = {"node_modules"}
ID_LENGTH = 32


def iter_note_paths(vault_root: Path, directory: Path | None = None) -> Iterator[str]:
    """Yield vault-relative POSIX paths of Markdown notes.

    Hidden directories and ``node_modules`` are not descended into.
    """
    current = directory or vault_root
    for child in sorted(current.iterdir()):
        if child.is_dir():
            if child.name.startswith(".") or child.name in SKIPPED_DIRS:
                continue
            yield from iter_note_paths(vault_root, child)
        elif child.is_file() and child.suffix == NOTE_SUFFIX:
            yield child.relative_to(vault_root).as_posix()


def list_note_paths(vault_root: Path) -> Set[str]:
    """Enumerate the current set of notes in the vault."""
    return set(iter_note_paths(Path(vault_root)))


def compute_checksum(content: str) -> str:
    """SHA-256 hex digest of serialized content, used for change detection."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def hash_path(path: str) -> str:
    """Deterministic short vector id for a sanitized note path."""
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:ID_LENGTH]

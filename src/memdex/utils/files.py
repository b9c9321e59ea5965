"""Utility helpers for working with memory files."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import List

MEMORY_FILE_NAMES = ("MEMORY.md", "memory.md")
MEMORY_DIR_NAME = "memory"


def hash_text(text: str) -> str:
    """SHA256 hex digest of UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_rel_path(value: str) -> str:
    """Strip leading ``./`` or ``/`` prefixes and use forward slashes."""
    normalized = value.strip().replace("\\", "/")
    while normalized.startswith(("./", "/")):
        normalized = normalized.removeprefix("./").removeprefix("/")
    return normalized


def is_memory_path(rel_path: str) -> bool:
    """True for ``MEMORY.md``/``memory.md`` or a ``*.md`` file under ``memory/``."""
    normalized = normalize_rel_path(rel_path)
    if not normalized or ".." in normalized.split("/"):
        return False
    if normalized in MEMORY_FILE_NAMES:
        return True
    return normalized.startswith(MEMORY_DIR_NAME + "/") and normalized.endswith(".md")


def list_memory_files(workspace_dir: Path) -> List[Path]:
    """Return the memory files of a workspace.

    That is ``MEMORY.md`` and ``memory.md`` at the root followed by every
    ``*.md`` file below ``memory/``. Entries resolving to the same real file
    (symlinks, case-insensitive file systems) are reported once.
    """
    workspace_dir = Path(workspace_dir)
    found: List[Path] = []
    for name in MEMORY_FILE_NAMES:
        candidate = workspace_dir / name
        if candidate.is_file():
            found.append(candidate)

    memory_dir = workspace_dir / MEMORY_DIR_NAME
    if memory_dir.is_dir():
        found.extend(sorted(p for p in memory_dir.rglob("*.md") if p.is_file()))

    seen: set[str] = set()
    deduped: List[Path] = []
    for path in found:
        key = os.path.realpath(path)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(path)
    return deduped


def relative_key(path: Path, workspace_dir: Path) -> str:
    """Workspace-relative, forward-slash path used as the document key."""
    return Path(path).relative_to(workspace_dir).as_posix()

"""Read, write and delete memory files inside a workspace directory."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from memdex.utils.files import (
    MEMORY_FILE_NAMES,
    is_memory_path,
    list_memory_files,
    normalize_rel_path,
    relative_key,
)

LOGGER = logging.getLogger(__name__)

MAX_READ_BYTES = 10 * 1024 * 1024
PROTECTED_FILES = frozenset({"MEMORY.md"})


class WorkspaceError(ValueError):
    """A file request the workspace refuses to carry out."""


class MemoryWorkspace:
    """File access for memory tools, confined to ``workspace_dir``.

    ``on_change`` is called after every successful write or delete; the
    memory manager passes its ``mark_dirty`` here.
    """

    def __init__(
        self, workspace_dir: Path, *, on_change: Optional[Callable[[], None]] = None
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.on_change = on_change

    def resolve(self, rel_path: str) -> Path:
        """Absolute path for ``rel_path``, refusing anything outside the workspace."""
        if "\0" in rel_path:
            raise WorkspaceError("Invalid path: contains null byte")
        root = Path(os.path.realpath(self.workspace_dir))
        candidate = Path(os.path.realpath(root / rel_path.strip()))
        if candidate != root and root not in candidate.parents:
            raise WorkspaceError("Path outside workspace directory is not allowed")
        return candidate

    def list_files(self) -> List[str]:
        return [relative_key(path, self.workspace_dir) for path in list_memory_files(self.workspace_dir)]

    def read(self, rel_path: str, *, from_line: Optional[int] = None, lines: Optional[int] = None) -> str:
        """Return the file, or a window of it starting at 1-based ``from_line``."""
        path = self.resolve(rel_path)
        if not path.is_file():
            raise WorkspaceError(f"File not found: {rel_path}")
        size = path.stat().st_size
        if size > MAX_READ_BYTES:
            raise WorkspaceError(
                f"File too large ({size / 1024 / 1024:.2f}MB > "
                f"{MAX_READ_BYTES // (1024 * 1024)}MB limit)"
            )
        content = path.read_text(encoding="utf-8")
        if from_line is None:
            return content
        all_lines = content.split("\n")
        start = max(0, from_line - 1)
        end = start + lines if lines is not None else None
        return "\n".join(all_lines[start:end])

    def write(self, rel_path: str, content: str) -> Path:
        """Create or replace a memory file, creating directories as needed."""
        if not is_memory_path(rel_path):
            raise WorkspaceError(
                "Memory files must be MEMORY.md or live under memory/ "
                f"(got {rel_path!r})"
            )
        path = self.resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        LOGGER.info("Wrote memory file %s (%d chars)", rel_path, len(content))
        self._changed()
        return path

    def delete(self, rel_path: str) -> None:
        normalized = normalize_rel_path(rel_path)
        if normalized in PROTECTED_FILES:
            raise WorkspaceError(f"{normalized} cannot be deleted")
        if not is_memory_path(rel_path) or normalized in MEMORY_FILE_NAMES:
            raise WorkspaceError(f"Not a deletable memory file: {rel_path}")
        path = self.resolve(rel_path)
        if not path.is_file():
            raise WorkspaceError(f"File not found: {rel_path}")
        path.unlink()
        LOGGER.info("Deleted memory file %s", rel_path)
        self._changed()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

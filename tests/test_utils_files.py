"""Tests for file utility functions."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from memdex.utils.files import (
    hash_text,
    is_memory_path,
    list_memory_files,
    normalize_rel_path,
    relative_key,
)


class TestHashing:
    """Test hash helpers."""

    def test_hash_text_matches_hashlib(self) -> None:
        assert hash_text("hello") == hashlib.sha256(b"hello").hexdigest()

    def test_hash_text_utf8(self) -> None:
        assert hash_text("caffè") == hashlib.sha256("caffè".encode("utf-8")).hexdigest()


class TestMemoryPaths:
    """Test memory path classification."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("memory/notes.md", "memory/notes.md"),
            ("./memory/notes.md", "memory/notes.md"),
            ("/MEMORY.md", "MEMORY.md"),
            ("memory\\sub\\a.md", "memory/sub/a.md"),
            ("././memory/a.md", "memory/a.md"),
            ("//MEMORY.md", "MEMORY.md"),
            (".memory.md", ".memory.md"),
            (".memory/x.md", ".memory/x.md"),
            ("../memory/a.md", "../memory/a.md"),
        ],
    )
    def test_normalize_rel_path(self, value: str, expected: str) -> None:
        assert normalize_rel_path(value) == expected

    @pytest.mark.parametrize(
        "value",
        ["MEMORY.md", "memory.md", "memory/2024-01-01.md", "./memory/deep/x.md"],
    )
    def test_memory_paths_accepted(self, value: str) -> None:
        assert is_memory_path(value)

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "README.md",
            "notes/memory.md",
            "memoryx/a.md",
            ".memory.md",
            ".memory/x.md",
            "memory/x.txt",
            "memory/../README.md",
        ],
    )
    def test_other_paths_rejected(self, value: str) -> None:
        assert not is_memory_path(value)


class TestListMemoryFiles:
    """Test list_memory_files function."""

    def test_finds_root_and_nested_files(self, tmp_path: Path) -> None:
        """Should list root MEMORY.md first, then memory/**/*.md sorted."""
        (tmp_path / "MEMORY.md").write_text("root")
        (tmp_path / "memory" / "sub").mkdir(parents=True)
        (tmp_path / "memory" / "b.md").write_text("b")
        (tmp_path / "memory" / "a.md").write_text("a")
        (tmp_path / "memory" / "sub" / "c.md").write_text("c")
        (tmp_path / "memory" / "skip.txt").write_text("not markdown")
        (tmp_path / "README.md").write_text("outside memory")

        keys = [relative_key(p, tmp_path) for p in list_memory_files(tmp_path)]

        assert keys[0] == "MEMORY.md"
        assert sorted(keys[1:]) == keys[1:]
        assert set(keys) == {"MEMORY.md", "memory/a.md", "memory/b.md", "memory/sub/c.md"}

    def test_missing_directories(self, tmp_path: Path) -> None:
        assert list_memory_files(tmp_path) == []

    def test_ignores_directories_named_md(self, tmp_path: Path) -> None:
        (tmp_path / "memory" / "folder.md").mkdir(parents=True)
        assert list_memory_files(tmp_path) == []

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinked_duplicates_reported_once(self, tmp_path: Path) -> None:
        (tmp_path / "memory").mkdir()
        target = tmp_path / "memory" / "real.md"
        target.write_text("content")
        try:
            (tmp_path / "memory" / "zz_link.md").symlink_to(target)
        except OSError:
            pytest.skip("cannot create symlinks here")

        files = list_memory_files(tmp_path)

        assert [p.name for p in files] == ["real.md"]


def test_relative_key_uses_forward_slashes(tmp_path: Path) -> None:
    path = tmp_path / "memory" / "sub" / "x.md"
    assert relative_key(path, tmp_path) == "memory/sub/x.md"

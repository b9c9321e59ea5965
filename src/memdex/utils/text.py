"""Text helpers: line-aware markdown chunking and query/snippet shaping."""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from memdex.models import DEFAULT_SOURCE, MemoryChunk
from memdex.utils.files import hash_text

# Rough token estimate used everywhere a budget is given in tokens.
CHARS_PER_TOKEN = 4
MIN_CHUNK_CHARS = 32
SNIPPET_ELLIPSIS = "..."

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def tokens_to_chars(tokens: int) -> int:
    return tokens * CHARS_PER_TOKEN


def chunk_markdown(
    text: str,
    *,
    tokens: int,
    overlap: int,
    source: str = DEFAULT_SOURCE,
) -> List[MemoryChunk]:
    """Split ``text`` into line-aligned chunks of roughly ``tokens`` tokens.

    Lines are packed into a buffer until the next line would push it past the
    character budget, at which point the buffer is emitted and its trailing
    lines (worth at least ``overlap`` tokens) seed the next chunk. Lines that
    alone exceed the budget are cut into fixed-width segments that keep their
    original line number. Every buffered line counts one extra character for
    the joining newline.

    The result is deterministic: the same arguments always produce the same
    chunk text, spans and hashes.
    """
    max_chars = max(MIN_CHUNK_CHARS, tokens_to_chars(tokens))
    overlap_chars = max(0, tokens_to_chars(overlap))

    chunks: List[MemoryChunk] = []
    current: List[Tuple[str, int]] = []
    current_chars = 0

    def flush() -> None:
        if not current:
            return
        body = "\n".join(segment for segment, _ in current)
        chunks.append(
            MemoryChunk(
                start_line=current[0][1],
                end_line=current[-1][1],
                text=body,
                hash=hash_text(body),
                source=source,
            )
        )

    def carry_overlap() -> None:
        nonlocal current, current_chars
        if overlap_chars <= 0 or not current:
            current = []
            current_chars = 0
            return
        kept: List[Tuple[str, int]] = []
        acc = 0
        for entry in reversed(current):
            acc += len(entry[0]) + 1
            kept.insert(0, entry)
            if acc >= overlap_chars:
                break
        current = kept
        current_chars = sum(len(segment) + 1 for segment, _ in kept)

    for line_no, line in enumerate(text.split("\n"), start=1):
        if line:
            segments = [line[start : start + max_chars] for start in range(0, len(line), max_chars)]
        else:
            segments = [""]

        for segment in segments:
            size = len(segment) + 1
            if current_chars + size > max_chars and current:
                flush()
                carry_overlap()
            current.append((segment, line_no))
            current_chars += size

    flush()
    return chunks


def truncate_snippet(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, marking the cut with ``...``."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + SNIPPET_ELLIPSIS


def build_fts_query(raw: str) -> Optional[str]:
    """Turn free text into an FTS5 ``MATCH`` expression.

    Each word token is quoted so FTS5 operators in user input stay literal,
    and tokens are OR-ed so partial matches still rank. Returns ``None``
    when the input holds no word characters.
    """
    tokens = _TOKEN_RE.findall(raw)
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in tokens)

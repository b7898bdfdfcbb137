#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .schema import DialogueEntry


@dataclass(frozen=True)
class Chunk:
    """Contiguous same-persona entries synthesized in one call."""

    persona: str
    entries: Tuple[DialogueEntry, ...]
    char_count: int

    @property
    def text(self) -> str:
        return "\n".join(entry.text for entry in self.entries)


def _make_chunk(entries: List[DialogueEntry]) -> Chunk:
    return Chunk(
        persona=entries[0].persona,
        entries=tuple(entries),
        char_count=sum(len(entry.text) for entry in entries),
    )


def chunk_dialogue(entries: Sequence[DialogueEntry], budget: int) -> List[Chunk]:
    """Pack entries greedily into chunks of at most `budget` characters.

    A persona change always closes the current chunk. An entry longer than
    the budget becomes a chunk of its own and never merges with neighbors.
    """
    if budget <= 0:
        raise ValueError(f"budget must be positive, got {budget}")

    out: List[Chunk] = []
    current: List[DialogueEntry] = []
    current_chars = 0
    for entry in entries:
        size = len(entry.text)
        if size > budget:
            if current:
                out.append(_make_chunk(current))
                current = []
                current_chars = 0
            out.append(_make_chunk([entry]))
            continue

        if current and (current_chars + size > budget or entry.persona != current[0].persona):
            out.append(_make_chunk(current))
            current = []
            current_chars = 0
        current.append(entry)
        current_chars += size

    if current:
        out.append(_make_chunk(current))
    return out


def chunk_file_name(index: int, chunk: Chunk) -> str:
    """File name for the 1-based `index`-th chunk, e.g. `0003-historian.mp3`."""
    return f"{index:04d}-{chunk.persona.lower()}.mp3"

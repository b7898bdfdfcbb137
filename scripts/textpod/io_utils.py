#!/usr/bin/env python3
from __future__ import annotations

"""File helpers shared by stage handlers: tolerant reads and atomic writes."""

import json
import os
from typing import Any, Callable, Optional, Tuple


def read_text_file_with_fallback(
    path: str,
    *,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> Tuple[str, str]:
    """Read text file trying a safe sequence of fallback encodings.

    Returns `(content, encoding_used)`.
    """
    encodings = ["utf-8", "utf-8-sig", "cp1252", "latin-1"]
    last_exc: Exception | None = None
    for enc in encodings:
        try:
            with open(path, "r", encoding=enc) as f:
                data = f.read()
            if enc != "utf-8" and on_fallback is not None:
                on_fallback(enc)
            return data, enc
        except UnicodeDecodeError as exc:
            last_exc = exc
            continue
    raise RuntimeError(f"Failed to decode {path} with supported encodings: {last_exc}")


def _ensure_parent(path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Write bytes via tmp file + rename so readers never see partial files."""
    _ensure_parent(path)
    tmp = f"{path}.tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


def atomic_write_text(path: str, text: str) -> None:
    _ensure_parent(path)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp, path)


def atomic_write_json(path: str, payload: Any) -> None:
    """Write JSON atomically with stable formatting."""
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

#!/usr/bin/env python3
from __future__ import annotations

"""Recover JSON structures from free-form generator output.

Generators wrap JSON in prose, code fences and stray snippets, and sometimes
emit raw newlines inside strings or trailing commas. The helpers here locate
bracket-balanced candidates with a string-aware scan and repair those two
defects without touching brackets or quotes.
"""

import json
import re
from typing import Any, Iterator, Optional, Sequence

from .errors import ContentError

KIND_OBJECT = "object"
KIND_ARRAY = "array"

_BRACKETS = {
    KIND_OBJECT: ("{", "}"),
    KIND_ARRAY: ("[", "]"),
}

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+\-]*[ \t]*")

_CONTROL_ESCAPES = {
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def _brackets(kind: str) -> tuple[str, str]:
    try:
        return _BRACKETS[kind]
    except KeyError:
        raise ValueError(f"unknown structure kind: {kind!r}") from None


def strip_code_fences(text: str) -> str:
    """Remove every ``` delimiter, including an optional language tag."""
    return _FENCE_RE.sub("", str(text or ""))


def find_balanced(text: str, start: int, kind: str) -> Optional[int]:
    """Return the inclusive end index of the structure opening at `start`.

    Only brackets of `kind` outside string literals change the depth. Returns
    None when the text ends before the depth returns to zero.
    """
    open_ch, close_ch = _brackets(kind)
    if start < 0 or start >= len(text) or text[start] != open_ch:
        raise ValueError(f"no {open_ch!r} at index {start}")
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return idx
    return None


def iter_candidates(text: str, kind: str) -> Iterator[str]:
    """Yield every bracket-balanced substring of `kind`, left to right."""
    open_ch, _ = _brackets(kind)
    pos = text.find(open_ch)
    while pos != -1:
        end = find_balanced(text, pos, kind)
        if end is None:
            pos = text.find(open_ch, pos + 1)
            continue
        yield text[pos : end + 1]
        pos = text.find(open_ch, end + 1)


def _has_fields(value: Any, required_fields: Sequence[str]) -> bool:
    return isinstance(value, dict) and all(name in value for name in required_fields)


def _matches_shape(candidate: str, kind: str, required_fields: Sequence[str]) -> bool:
    try:
        value = json.loads(sanitize(candidate))
    except ValueError:
        return False
    if kind == KIND_ARRAY:
        return isinstance(value, list) and bool(value) and _has_fields(value[0], required_fields)
    return _has_fields(value, required_fields)


def extract(raw: str, kind: str, required_fields: Sequence[str] = ()) -> Optional[str]:
    """Return the first candidate of `kind` found in `raw`, or None.

    With `required_fields`, candidates are parsed and kept only when their
    shape carries those fields (the first element, for arrays). This skips
    decoy snippets that happen to be balanced.
    """
    text = strip_code_fences(raw)
    for candidate in iter_candidates(text, kind):
        if not required_fields or _matches_shape(candidate, kind, required_fields):
            return candidate
    return None


def _next_significant(text: str, idx: int) -> str:
    """Return the next char after `idx` that is neither whitespace nor a comma."""
    n = len(text)
    while idx < n and (text[idx].isspace() or text[idx] == ","):
        idx += 1
    return text[idx] if idx < n else ""


def sanitize(text: str) -> str:
    """Escape control chars inside strings and drop trailing commas.

    Valid JSON passes through unchanged and `sanitize(sanitize(x)) ==
    sanitize(x)` for any input.
    """
    out: list[str] = []
    in_string = False
    escape = False
    for idx, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
                out.append(ch)
            elif ch == "\\":
                escape = True
                out.append(ch)
            elif ch == '"':
                in_string = False
                out.append(ch)
            elif ch in _CONTROL_ESCAPES:
                out.append(_CONTROL_ESCAPES[ch])
            elif ord(ch) < 0x20:
                out.append(f"\\u{ord(ch):04x}")
            else:
                out.append(ch)
            continue
        if ch == '"':
            in_string = True
        elif ch == "," and _next_significant(text, idx + 1) in ("}", "]"):
            continue
        out.append(ch)
    return "".join(out)


def parse_structured(
    raw: str,
    kind: str,
    required_fields: Sequence[str] = (),
    *,
    label: str = "generator output",
) -> Any:
    """Extract, sanitize and strictly parse a JSON structure from `raw`."""
    candidate = extract(raw, kind, required_fields)
    if candidate is None:
        if required_fields:
            fields = ", ".join(required_fields)
            raise ContentError(f"No JSON {kind} with fields ({fields}) found in {label}")
        raise ContentError(f"No JSON {kind} found in {label}")
    try:
        return json.loads(sanitize(candidate))
    except ValueError as exc:
        raise ContentError(f"Invalid JSON {kind} in {label}: {exc}") from exc

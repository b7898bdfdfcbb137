#!/usr/bin/env python3
from __future__ import annotations

"""Strict deserialization of generator output into typed values."""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .errors import ContentError
from .json_extract import KIND_ARRAY, KIND_OBJECT, parse_structured

PERSONA_OPERATOR = "OPERATOR"
PERSONA_HISTORIAN = "HISTORIAN"
PERSONA_NARRATOR = "NARRATOR"
PERSONAS = (PERSONA_OPERATOR, PERSONA_HISTORIAN, PERSONA_NARRATOR)

SCRIPT_REQUIRED_FIELDS = ("persona", "text")
METADATA_REQUIRED_FIELDS = ("title", "summary")
MAX_RELATED_LINKS = 5


@dataclass(frozen=True)
class DialogueEntry:
    persona: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"persona": self.persona, "text": self.text}


@dataclass(frozen=True)
class EpisodeMetadata:
    """Title, summary and source details produced by the metadata stage."""

    title: str
    summary: str
    published_at: Optional[str]
    related_links: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "published_at": self.published_at,
            "related_links": list(self.related_links),
        }


def _require_text(raw: Dict[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ContentError(f"{where} missing non-empty string '{key}'")
    return value.strip()


def normalize_persona(value: Any) -> str:
    return re.sub(r"\s+", "", str(value or "")).upper()


def parse_dialogue_entry(raw: Any, idx: int) -> DialogueEntry:
    where = f"script[{idx}]"
    if not isinstance(raw, dict):
        raise ContentError(f"{where} must be an object")
    persona = normalize_persona(raw.get("persona"))
    if persona not in PERSONAS:
        raise ContentError(
            f"{where} has unknown persona {raw.get('persona')!r}; expected one of {', '.join(PERSONAS)}"
        )
    return DialogueEntry(persona=persona, text=_require_text(raw, "text", where))


def validate_script_payload(payload: Any) -> List[DialogueEntry]:
    if not isinstance(payload, list):
        raise ContentError("script must be a JSON array")
    entries = [parse_dialogue_entry(item, idx) for idx, item in enumerate(payload)]
    if not entries:
        raise ContentError("script has no entries")
    return entries


def parse_script(raw_text: str) -> List[DialogueEntry]:
    """Turn raw generator text into a validated list of dialogue entries."""
    payload = parse_structured(raw_text, KIND_ARRAY, SCRIPT_REQUIRED_FIELDS, label="script output")
    return validate_script_payload(payload)


def _normalize_published_at(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    if not text or text.lower() in {"null", "none", "unknown", "n/a"}:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return text
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_links(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ContentError("metadata 'related_links' must be a list")
    links: List[str] = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("url")
        link = str(item or "").strip()
        if link.startswith(("http://", "https://")) and link not in links:
            links.append(link)
    return tuple(links[:MAX_RELATED_LINKS])


def validate_metadata_payload(payload: Any) -> EpisodeMetadata:
    if not isinstance(payload, dict):
        raise ContentError("metadata must be a JSON object")
    return EpisodeMetadata(
        title=_require_text(payload, "title", "metadata"),
        summary=_require_text(payload, "summary", "metadata"),
        published_at=_normalize_published_at(payload.get("published_at")),
        related_links=_normalize_links(payload.get("related_links")),
    )


def parse_metadata(raw_text: str) -> EpisodeMetadata:
    payload = parse_structured(raw_text, KIND_OBJECT, METADATA_REQUIRED_FIELDS, label="metadata output")
    return validate_metadata_payload(payload)


def script_to_payload(entries: List[DialogueEntry]) -> List[Dict[str, str]]:
    return [entry.to_dict() for entry in entries]


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()

#!/usr/bin/env python3
from __future__ import annotations

"""Built-in prompts and the file-override/placeholder rendering around them."""

from dataclasses import dataclass
from typing import Optional

from .io_utils import read_text_file_with_fallback
from .schema import content_hash

METADATA_SYSTEM_PROMPT = """\
You are a research assistant preparing show notes for a technology podcast.
Read the article at the given URL (search the web if you need to) and answer
with a single JSON object and nothing else:

{
  "title": "short episode title, at most 90 characters",
  "summary": "two or three sentences describing what the article covers",
  "published_at": "ISO-8601 publication date of the article, or null",
  "related_links": ["up to five URLs that give useful background"]
}
"""

METADATA_PROMPT_TEMPLATE = """\
Article URL: {url}

Return the JSON object described in your instructions.
"""

SCRIPT_SYSTEM_PROMPT = """\
You write scripts for a three-voice technology briefing podcast.

Voices:
- NARRATOR opens and closes the episode and introduces each section.
- OPERATOR explains how the technology works in practice and what it changes
  for people who build and run systems.
- HISTORIAN places the story in context: earlier attempts, prior art and how
  the field arrived here.

Answer with a JSON array only. Each element is an object with exactly two
keys: "persona" (one of NARRATOR, OPERATOR, HISTORIAN) and "text" (what that
voice says). Keep each turn under 700 characters. Do not use stage
directions, sound effects or markdown.
"""

SCRIPT_PROMPT_TEMPLATE = """\
Source article: {url}
Episode title: {title}
Summary: {summary}

Write the episode script as a JSON array of {{"persona", "text"}} objects.
"""


@dataclass(frozen=True)
class PromptPair:
    system: str
    template: str

    @property
    def version(self) -> str:
        """Short hash identifying this exact prompt pair."""
        return content_hash(self.system + "\n---\n" + self.template)[:12]


def _load(path: Optional[str], fallback: str) -> str:
    if not path:
        return fallback
    text, _encoding = read_text_file_with_fallback(path)
    return text


def load_prompt_pair(
    *,
    system_path: Optional[str],
    template_path: Optional[str],
    default_system: str,
    default_template: str,
) -> PromptPair:
    return PromptPair(
        system=_load(system_path, default_system),
        template=_load(template_path, default_template),
    )


def render_prompt(template: str, **values: object) -> str:
    """Fill `{name}` placeholders; `{{` and `}}` render as literal braces.

    Unknown placeholders and stray braces are left untouched, so JSON
    examples inside user-supplied templates survive rendering.
    """
    text = template.replace("{{", "\x00").replace("}}", "\x01")
    for name, value in values.items():
        text = text.replace("{" + name + "}", "" if value is None else str(value))
    return text.replace("\x00", "{").replace("\x01", "}")

#!/usr/bin/env python3
from __future__ import annotations

"""Centralized runtime configuration for the text-to-pod pipeline.

This module maps environment variables and optional CLI overrides into frozen
dataclasses. The CLI builds one `PipelineSettings` value and passes it
explicitly to the orchestrator and every stage handler.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ConfigurationError


def _env_str(name: str, default: str) -> str:
    """Read string env var with trim + default fallback."""
    v = os.environ.get(name)
    return default if v is None else str(v).strip()


def _env_int(name: str, default: int) -> int:
    """Read integer env var with defensive fallback."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Read boolean env var from common truthy literals."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _coalesce(value: Any, fallback: Any) -> Any:
    """Return fallback when value is None."""
    return fallback if value is None else value


def _optional_path(value: Optional[str]) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    return os.path.expanduser(text)


def _require_existing_file(path: Optional[str], *, option: str) -> None:
    if path is not None and not os.path.isfile(path):
        raise ConfigurationError(f"{option} points to a missing file: {path}")


DEFAULT_OPERATOR_INSTRUCTIONS = (
    "Steady and dry. Low-key delivery, grounded and practical, no hype."
)
DEFAULT_HISTORIAN_INSTRUCTIONS = (
    "Calm and reflective. Even pacing, gentle emphasis on dates and names."
)
DEFAULT_NARRATOR_INSTRUCTIONS = (
    "Neutral and soft-spoken. Clear section introductions, read quotes verbatim."
)


@dataclass(frozen=True)
class LoggingConfig:
    """Logging behavior used by `Logger`."""

    level: str
    heartbeat_seconds: int
    debug_events: bool
    include_event_ids: bool

    @staticmethod
    def from_env(*, verbose: bool = False, debug: bool = False) -> "LoggingConfig":
        """Build logging config from environment and CLI verbosity flags."""
        level = _env_str("LOG_LEVEL", "INFO").upper()
        if debug or verbose:
            level = "DEBUG"
        return LoggingConfig(
            level=level,
            heartbeat_seconds=max(1, _env_int("LOG_HEARTBEAT_SECONDS", 15)),
            debug_events=debug or _env_bool("LOG_DEBUG_EVENTS", False),
            include_event_ids=_env_bool("LOG_INCLUDE_EVENT_IDS", True),
        )


@dataclass(frozen=True)
class GeneratorConfig:
    """Text-generation and speech-synthesis endpoint configuration."""

    api_key: str
    base_url: str
    metadata_model: str
    script_model: str
    tts_model: str
    timeout_seconds: int
    tts_timeout_seconds: int
    web_search: bool
    metadata_system_prompt_path: Optional[str]
    metadata_prompt_template_path: Optional[str]
    script_system_prompt_path: Optional[str]
    script_prompt_template_path: Optional[str]

    @staticmethod
    def from_env(
        *,
        metadata_model: Optional[str] = None,
        script_model: Optional[str] = None,
        tts_model: Optional[str] = None,
        metadata_system_prompt: Optional[str] = None,
        metadata_prompt_template: Optional[str] = None,
        script_system_prompt: Optional[str] = None,
        script_prompt_template: Optional[str] = None,
    ) -> "GeneratorConfig":
        """Build generator config from env and optional CLI overrides."""
        return GeneratorConfig(
            api_key=_env_str("OPENAI_API_KEY", ""),
            base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            metadata_model=_coalesce(metadata_model, _env_str("METADATA_MODEL", "gpt-4o")),
            script_model=_coalesce(script_model, _env_str("SCRIPT_MODEL", "gpt-4.1")),
            tts_model=_coalesce(tts_model, _env_str("TTS_MODEL", "gpt-4o-mini-tts")),
            timeout_seconds=max(10, _env_int("OPENAI_TIMEOUT_SECONDS", 300)),
            tts_timeout_seconds=max(5, _env_int("TTS_TIMEOUT_SECONDS", 120)),
            web_search=_env_bool("GENERATOR_WEB_SEARCH", True),
            metadata_system_prompt_path=_optional_path(
                _coalesce(metadata_system_prompt, os.environ.get("METADATA_SYSTEM_PROMPT"))
            ),
            metadata_prompt_template_path=_optional_path(
                _coalesce(metadata_prompt_template, os.environ.get("METADATA_PROMPT_TEMPLATE"))
            ),
            script_system_prompt_path=_optional_path(
                _coalesce(script_system_prompt, os.environ.get("SCRIPT_SYSTEM_PROMPT"))
            ),
            script_prompt_template_path=_optional_path(
                _coalesce(script_prompt_template, os.environ.get("SCRIPT_PROMPT_TEMPLATE"))
            ),
        )

    def validate(self, *, require_api_key: bool) -> None:
        if require_api_key and not self.api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for metadata, script and audio stages")
        _require_existing_file(self.metadata_system_prompt_path, option="--metadata-system-prompt")
        _require_existing_file(self.metadata_prompt_template_path, option="--metadata-prompt-template")
        _require_existing_file(self.script_system_prompt_path, option="--script-system-prompt")
        _require_existing_file(self.script_prompt_template_path, option="--script-prompt-template")


@dataclass(frozen=True)
class AudioConfig:
    """Voice, chunking and ffmpeg settings for the audio and merge stages."""

    operator_voice: str
    historian_voice: str
    narrator_voice: str
    operator_instructions: str
    historian_instructions: str
    narrator_instructions: str
    max_script_chars: int
    ffmpeg_bin: str
    ffprobe_bin: str
    ffmpeg_loglevel: str
    intro_bumper: Optional[str]
    outro_bumper: Optional[str]

    @staticmethod
    def from_env(
        *,
        operator_voice: Optional[str] = None,
        historian_voice: Optional[str] = None,
        narrator_voice: Optional[str] = None,
        max_script_chars: Optional[int] = None,
    ) -> "AudioConfig":
        """Build audio config from env and optional CLI overrides."""
        return AudioConfig(
            operator_voice=_coalesce(operator_voice, _env_str("OPERATOR_VOICE", "coral")),
            historian_voice=_coalesce(historian_voice, _env_str("HISTORIAN_VOICE", "ballad")),
            narrator_voice=_coalesce(narrator_voice, _env_str("NARRATOR_VOICE", "ash")),
            operator_instructions=_env_str("OPERATOR_INSTRUCTIONS", DEFAULT_OPERATOR_INSTRUCTIONS),
            historian_instructions=_env_str("HISTORIAN_INSTRUCTIONS", DEFAULT_HISTORIAN_INSTRUCTIONS),
            narrator_instructions=_env_str("NARRATOR_INSTRUCTIONS", DEFAULT_NARRATOR_INSTRUCTIONS),
            max_script_chars=int(_coalesce(max_script_chars, _env_int("MAX_SCRIPT_CHARS", 900))),
            ffmpeg_bin=_env_str("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=_env_str("FFPROBE_BIN", "ffprobe"),
            ffmpeg_loglevel=_env_str("FFMPEG_LOGLEVEL", "warning"),
            intro_bumper=_optional_path(_env_str("INTRO_BUMPER", "resources/intro.mp3")),
            outro_bumper=_optional_path(_env_str("OUTRO_BUMPER", "resources/outro.mp3")),
        )

    def validate(self) -> None:
        if self.max_script_chars <= 0:
            raise ConfigurationError(f"--max-script-chars must be positive, got {self.max_script_chars}")
        for name, voice in (
            ("operator", self.operator_voice),
            ("historian", self.historian_voice),
            ("narrator", self.narrator_voice),
        ):
            if not str(voice or "").strip():
                raise ConfigurationError(f"{name} voice must not be empty")

    def voices_by_persona(self) -> Dict[str, str]:
        return {
            "OPERATOR": self.operator_voice,
            "HISTORIAN": self.historian_voice,
            "NARRATOR": self.narrator_voice,
        }

    def instructions_by_persona(self) -> Dict[str, str]:
        return {
            "OPERATOR": self.operator_instructions,
            "HISTORIAN": self.historian_instructions,
            "NARRATOR": self.narrator_instructions,
        }


@dataclass(frozen=True)
class FeedDefaults:
    """Branding used when the feed document is created for the first time."""

    title: str
    link: str
    description: str
    language: str
    author: str
    image_url: str


@dataclass(frozen=True)
class PublishConfig:
    """Object-storage layout and feed branding for the publish stage."""

    origin: str
    bucket: str
    feed_key: str
    audio_prefix: str
    cover_art_key: str
    cover_art_path: Optional[str]
    s3cfg: Optional[str]
    s3cmd_bin: str
    feed_source: str
    feed: FeedDefaults

    @staticmethod
    def from_env(*, s3cfg: Optional[str] = None, feed_source: Optional[str] = None) -> "PublishConfig":
        """Build publish config from env and optional CLI overrides."""
        origin = _env_str("SPACES_ORIGIN", "https://tbtr.nyc3.digitaloceanspaces.com").rstrip("/")
        cover_art_key = _env_str("SPACES_COVER_ART_KEY", "podcast/podcast-cover-art.png").lstrip("/")
        source = str(_coalesce(feed_source, _env_str("FEED_SOURCE", "remote"))).strip().lower()
        return PublishConfig(
            origin=origin,
            bucket=_env_str("SPACES_BUCKET", "tbtr"),
            feed_key=_env_str("SPACES_FEED_KEY", "podcast/podcast.xml").lstrip("/"),
            audio_prefix=_env_str("SPACES_AUDIO_PREFIX", "podcast/episodes").strip("/"),
            cover_art_key=cover_art_key,
            cover_art_path=_optional_path(_env_str("COVER_ART_PATH", "")),
            s3cfg=_optional_path(_coalesce(s3cfg, os.environ.get("S3CFG"))),
            s3cmd_bin=_env_str("S3CMD_BIN", "s3cmd"),
            feed_source=source,
            feed=FeedDefaults(
                title=_env_str("FEED_TITLE", "Automated Technology Briefings"),
                link=_env_str("FEED_LINK", origin),
                description=_env_str(
                    "FEED_DESCRIPTION",
                    "Curated conversations produced by the text-to-pod pipeline.",
                ),
                language=_env_str("FEED_LANGUAGE", "en-US"),
                author=_env_str("FEED_AUTHOR", "Text to Pod"),
                image_url=_env_str("FEED_IMAGE_URL", f"{origin}/{cover_art_key}"),
            ),
        )

    def validate(self) -> None:
        if self.feed_source not in {"remote", "local"}:
            raise ConfigurationError(f"feed source must be 'remote' or 'local', got {self.feed_source!r}")
        _require_existing_file(self.s3cfg, option="--s3cfg")

    def public_url(self, key: str) -> str:
        return f"{self.origin}/{key.lstrip('/')}"

    def audio_key(self, episode_id: str) -> str:
        return f"{self.audio_prefix}/{episode_id}.mp3"


@dataclass(frozen=True)
class StoreConfig:
    """Location of the SQLite episode database."""

    database_path: str

    @staticmethod
    def from_env(*, database_path: Optional[str] = None) -> "StoreConfig":
        return StoreConfig(
            database_path=os.path.expanduser(
                _coalesce(database_path, _env_str("DATABASE_PATH", "data/episodes.db"))
            )
        )


@dataclass(frozen=True)
class PipelineSettings:
    """Everything a pipeline run needs, passed by value into every stage."""

    output_root: str
    generator: GeneratorConfig
    audio: AudioConfig
    publish: PublishConfig
    store: StoreConfig
    logging: LoggingConfig
    force: bool = False
    dry_run: bool = False

    def local_feed_path(self) -> str:
        return os.path.join(self.output_root, "podcast.xml")

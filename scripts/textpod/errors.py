#!/usr/bin/env python3
from __future__ import annotations

import re
import socket
import urllib.error
from typing import Iterable, Optional

ERROR_KIND_PREREQUISITE = "prerequisite"
ERROR_KIND_INVALID_CONTENT = "invalid_content"
ERROR_KIND_DUPLICATE_EPISODE = "duplicate_episode"
ERROR_KIND_EXTERNAL_TOOL = "external_tool"
ERROR_KIND_CONFIGURATION = "configuration"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_EMPTY_OUTPUT = "empty_output"
ERROR_KIND_INTERRUPTED = "interrupted"
ERROR_KIND_UNKNOWN = "unknown"


class PipelineError(RuntimeError):
    """Base class for every error the pipeline raises on purpose."""

    default_kind = ERROR_KIND_UNKNOWN

    def __init__(self, message: str, *, error_kind: Optional[str] = None, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_kind = str(error_kind or self.default_kind).strip().lower()
        self.stage = stage


class PrerequisiteError(PipelineError):
    default_kind = ERROR_KIND_PREREQUISITE


class ContentError(PipelineError):
    """Generator output could not be turned into the expected structure."""

    default_kind = ERROR_KIND_INVALID_CONTENT


class DuplicateError(PipelineError):
    default_kind = ERROR_KIND_DUPLICATE_EPISODE

    def __init__(self, episode_id: str, *, stage: Optional[str] = None) -> None:
        super().__init__(
            f"Episode {episode_id} is already present in the feed. Use --force to replace it.",
            stage=stage,
        )
        self.episode_id = episode_id


class ExternalToolError(PipelineError):
    default_kind = ERROR_KIND_EXTERNAL_TOOL

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Iterable[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr


class ConfigurationError(PipelineError):
    default_kind = ERROR_KIND_CONFIGURATION


class GeneratorError(PipelineError):
    """Text or speech generation call failed (single attempt, never retried)."""

    default_kind = ERROR_KIND_NETWORK


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = getattr(current, "__cause__", None) or getattr(current, "__context__", None)
        current = next_exc if isinstance(next_exc, BaseException) else None


def classify_exception(exc: BaseException) -> str:
    """Map an exception (and its cause chain) to an error kind."""
    messages = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, PipelineError):
            return item.error_kind
        if isinstance(item, (InterruptedError, KeyboardInterrupt)):
            return ERROR_KIND_INTERRUPTED
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, urllib.error.HTTPError):
            code = int(getattr(item, "code", 0) or 0)
            if code == 429:
                return ERROR_KIND_RATE_LIMIT
            if code in {408, 504}:
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, urllib.error.URLError):
            reason = getattr(item, "reason", None)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, ConnectionError):
            return ERROR_KIND_NETWORK
        messages.append(str(item or ""))

    message = " ".join(messages).lower()
    if "429" in message or "rate limit" in message:
        return ERROR_KIND_RATE_LIMIT
    if re.search(r"\btimed? ?out\b", message) or "timeout" in message:
        return ERROR_KIND_TIMEOUT
    if "connection" in message or "urlopen error" in message:
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN

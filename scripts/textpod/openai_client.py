#!/usr/bin/env python3
from __future__ import annotations

"""OpenAI transport for text generation and speech synthesis.

Each request is attempted once. Transport and HTTP failures are classified
into an error kind and raised as `GeneratorError`, which fails the stage.
"""

import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import GeneratorConfig
from .errors import (
    ERROR_KIND_EMPTY_OUTPUT,
    GeneratorError,
    classify_exception,
)
from .logging_utils import Logger


def _extract_text_from_responses_payload(payload: Dict[str, Any]) -> str:
    """Extract output text from Responses API payload variants."""
    text = ""
    for item in payload.get("output", []):
        if not isinstance(item, dict):
            continue
        for content in item.get("content", []) or []:
            if isinstance(content, dict) and content.get("type") == "output_text":
                text += str(content.get("text", ""))
    if not text and payload.get("output_text"):
        text = str(payload["output_text"])
    return text.strip()


def _usage_tokens(payload: Dict[str, Any]) -> tuple[int, int]:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return 0, 0
    try:
        return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)
    except (TypeError, ValueError):
        return 0, 0


@dataclass(frozen=True)
class GenerationResult:
    text: str
    input_tokens: int
    output_tokens: int
    model: str


@dataclass
class OpenAIClient:
    api_key: str
    logger: Logger
    base_url: str = "https://api.openai.com/v1"
    tts_model: str = "gpt-4o-mini-tts"
    timeout_seconds: int = 300
    tts_timeout_seconds: int = 120
    web_search: bool = True
    requests_made: int = 0
    stats: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def from_config(config: GeneratorConfig, *, logger: Logger) -> "OpenAIClient":
        """Build a client; `GeneratorConfig.validate` decides whether a key is required."""
        return OpenAIClient(
            api_key=config.api_key,
            logger=logger,
            base_url=config.base_url,
            tts_model=config.tts_model,
            timeout_seconds=config.timeout_seconds,
            tts_timeout_seconds=config.tts_timeout_seconds,
            web_search=config.web_search,
        )

    def _request(self, endpoint: str, payload: Dict[str, Any]) -> urllib.request.Request:
        return urllib.request.Request(
            f"{self.base_url}/{endpoint}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )

    def _send(self, req: urllib.request.Request, *, timeout_seconds: int, request_kind: str) -> bytes:
        """Send one request; any failure becomes a classified GeneratorError."""
        self.requests_made += 1
        self.stats[request_kind] = self.stats.get(request_kind, 0) + 1
        started = time.time()
        try:
            with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            kind = classify_exception(exc)
            self.logger.warn(
                "openai_http_error",
                request_kind=request_kind,
                code=exc.code,
                error_kind=kind,
                detail=detail[:500],
            )
            raise GeneratorError(
                f"OpenAI {request_kind} request failed with HTTP {exc.code}: {detail[:200] or exc.reason}",
                error_kind=kind,
            ) from exc
        except (urllib.error.URLError, OSError, ValueError) as exc:
            kind = classify_exception(exc)
            self.logger.warn("openai_request_error", request_kind=request_kind, error_kind=kind, error=str(exc))
            raise GeneratorError(f"OpenAI {request_kind} request failed: {exc}", error_kind=kind) from exc
        self.logger.info(
            "openai_request_ok",
            request_kind=request_kind,
            elapsed_ms=int((time.time() - started) * 1000),
            bytes=len(body),
        )
        return body

    def generate(self, system_prompt: str, user_prompt: str, model: str) -> GenerationResult:
        """Run one Responses API call and return its text plus token usage."""
        payload: Dict[str, Any] = {
            "model": model,
            "instructions": system_prompt,
            "input": user_prompt,
        }
        if self.web_search:
            payload["tools"] = [{"type": "web_search_preview"}]
        body = self._send(
            self._request("responses", payload),
            timeout_seconds=self.timeout_seconds,
            request_kind="generate",
        )
        try:
            parsed = json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise GeneratorError(f"OpenAI returned a non-JSON body: {exc}") from exc
        if not isinstance(parsed, dict):
            raise GeneratorError("OpenAI returned an unexpected payload shape")
        text = _extract_text_from_responses_payload(parsed)
        if not text:
            raise GeneratorError("OpenAI returned empty output text", error_kind=ERROR_KIND_EMPTY_OUTPUT)
        input_tokens, output_tokens = _usage_tokens(parsed)
        return GenerationResult(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=str(parsed.get("model") or model),
        )

    def synthesize(
        self,
        text: str,
        voice: str,
        model: Optional[str] = None,
        instructions: Optional[str] = None,
    ) -> bytes:
        """Synthesize one chunk of speech as MP3 bytes."""
        payload: Dict[str, Any] = {
            "model": model or self.tts_model,
            "voice": voice,
            "input": text,
            "response_format": "mp3",
        }
        if instructions:
            payload["instructions"] = instructions
        audio = self._send(
            self._request("audio/speech", payload),
            timeout_seconds=self.tts_timeout_seconds,
            request_kind="tts",
        )
        if not audio:
            raise GeneratorError("OpenAI returned empty audio", error_kind=ERROR_KIND_EMPTY_OUTPUT)
        return audio

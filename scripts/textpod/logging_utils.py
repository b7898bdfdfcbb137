#!/usr/bin/env python3
from __future__ import annotations

"""Structured stderr logger for pipeline runs.

Each line carries the run id, optional event id, the message and a JSON blob
of fields. Child loggers made with `bind()` repeat episode/stage context on
every line they emit.
"""

import json
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, Optional

from .config import LoggingConfig

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def _fields_json(fields: Dict[str, object]) -> str:
    return json.dumps(fields, ensure_ascii=True, sort_keys=True, default=str)


def format_line(
    level: str,
    run_id: str,
    message: str,
    fields: Dict[str, object],
    *,
    event_id: str = "",
    now: Optional[float] = None,
) -> str:
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
    parts = [f"[{stamp}]", f"[{level}]", f"[run:{run_id}]"]
    if event_id:
        parts.append(f"[event:{event_id}]")
    parts.append(message)
    line = " ".join(parts)
    return f"{line} {_fields_json(fields)}" if fields else line


@dataclass
class Logger:
    config: LoggingConfig
    run_id: str
    context: Dict[str, object] = field(default_factory=dict)

    @staticmethod
    def create(config: LoggingConfig) -> "Logger":
        return Logger(config=config, run_id=uuid.uuid4().hex[:10])

    def bind(self, **fields: object) -> "Logger":
        """Child logger sharing the run id; None values are not bound."""
        context = {**self.context, **{k: v for k, v in fields.items() if v is not None}}
        return Logger(config=self.config, run_id=self.run_id, context=context)

    def enabled(self, level: str) -> bool:
        threshold = _LEVELS.get(self.config.level.upper(), _LEVELS["INFO"])
        return _LEVELS.get(level, _LEVELS["INFO"]) >= threshold

    def _emit(self, level: str, message: str, fields: Dict[str, object]) -> None:
        if not self.enabled(level):
            return
        event_id = uuid.uuid4().hex[:8] if self.config.include_event_ids else ""
        line = format_line(level, self.run_id, message, {**self.context, **fields}, event_id=event_id)
        print(line, file=sys.stderr, flush=True)

    def debug(self, message: str, **fields: object) -> None:
        """DEBUG lines need both the level and `debug_events`."""
        if self.config.debug_events:
            self._emit("DEBUG", message, fields)

    def info(self, message: str, **fields: object) -> None:
        self._emit("INFO", message, fields)

    def warn(self, message: str, **fields: object) -> None:
        self._emit("WARN", message, fields)

    def error(self, message: str, **fields: object) -> None:
        self._emit("ERROR", message, fields)

    @contextmanager
    def timed(self, name: str, **fields: object) -> Iterator[None]:
        """Log `<name>_started` and `<name>_finished` (with elapsed_ms and ok)."""
        started = time.monotonic()
        ok = False
        self.info(f"{name}_started", **fields)
        try:
            yield
            ok = True
        finally:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.info(f"{name}_finished", elapsed_ms=elapsed_ms, ok=ok, **fields)

    @contextmanager
    def heartbeat(
        self,
        label: str,
        status_fn: Optional[Callable[[], Dict[str, object]]] = None,
    ) -> Iterator[None]:
        """Log a `heartbeat` line every `heartbeat_seconds` until the block exits."""
        stop = threading.Event()
        interval = max(1, int(self.config.heartbeat_seconds))
        started = time.monotonic()

        def beat() -> None:
            while not stop.wait(interval):
                status: Dict[str, object] = {"label": label, "elapsed_sec": int(time.monotonic() - started)}
                if status_fn is not None:
                    try:
                        status.update(status_fn())
                    except Exception as exc:  # noqa: BLE001
                        status["status_error"] = str(exc)
                self.info("heartbeat", **status)

        worker = threading.Thread(target=beat, name=f"heartbeat-{label}", daemon=True)
        worker.start()
        try:
            yield
        finally:
            stop.set()
            worker.join(timeout=interval)

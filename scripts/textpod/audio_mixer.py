#!/usr/bin/env python3
from __future__ import annotations

"""ffmpeg/ffprobe wrappers for joining chunk audio into one episode file."""

import hashlib
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import AudioConfig
from .errors import ExternalToolError
from .logging_utils import Logger


def run_command(
    command: List[str],
    logger: Logger,
    *,
    allow_failure: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Execute an external command and raise ExternalToolError on failure."""
    logger.debug("run_command", command=" ".join(command))
    try:
        proc = subprocess.run(
            command,
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError as exc:
        if allow_failure:
            return subprocess.CompletedProcess(args=command, returncode=127, stdout="", stderr=str(exc))
        logger.error("command_spawn_failed", command=" ".join(command), error=str(exc))
        raise ExternalToolError(
            f"Could not start {command[0]}: {exc}",
            command=command,
            returncode=None,
            stderr=str(exc),
        ) from exc
    if proc.returncode != 0 and not allow_failure:
        stderr = (proc.stderr or "")[-1000:]
        logger.error(
            "command_failed",
            command=" ".join(command),
            returncode=proc.returncode,
            stderr=stderr,
        )
        raise ExternalToolError(
            f"Command failed ({proc.returncode}): {' '.join(command)}",
            command=command,
            returncode=proc.returncode,
            stderr=stderr,
        )
    return proc


def _ffconcat_line(path: str) -> str:
    """Build one safe ffconcat input line for a file path."""
    escaped = path.replace("\\", "\\\\").replace("'", "'\\''")
    return f"file '{escaped}'\n"


def write_concat_list(files: Sequence[str], list_path: str) -> None:
    os.makedirs(os.path.dirname(list_path) or ".", exist_ok=True)
    with open(list_path, "w", encoding="utf-8") as f:
        for path in files:
            f.write(_ffconcat_line(os.path.abspath(path)))


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


@dataclass
class AudioMixer:
    """Stream-copy concatenation of MP3 chunks with optional bumpers."""

    config: AudioConfig
    logger: Logger

    def with_bumpers(self, files: Sequence[str]) -> List[str]:
        """Wrap `files` with the configured intro/outro, skipping missing ones."""
        out = list(files)
        for position, path in (("intro", self.config.intro_bumper), ("outro", self.config.outro_bumper)):
            if not path:
                continue
            if not os.path.isfile(path):
                self.logger.warn("bumper_missing_skipped", position=position, path=path)
                continue
            if position == "intro":
                out.insert(0, path)
            else:
                out.append(path)
        return out

    def concat(self, files: Sequence[str], out_path: str, *, list_path: Optional[str] = None) -> str:
        """Join `files` in order into `out_path` without re-encoding."""
        if not files:
            raise ExternalToolError("Nothing to concatenate: no input files")
        os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
        with tempfile.TemporaryDirectory() as tmp:
            concat_file = list_path or os.path.join(tmp, "concat.txt")
            write_concat_list(files, concat_file)
            cmd = [
                self.config.ffmpeg_bin,
                "-hide_banner",
                "-loglevel",
                self.config.ffmpeg_loglevel,
                "-y",
                "-f",
                "concat",
                "-safe",
                "0",
                "-i",
                concat_file,
                "-c",
                "copy",
                out_path,
            ]
            run_command(cmd, self.logger)
        if not os.path.exists(out_path) or os.path.getsize(out_path) <= 0:
            raise ExternalToolError(f"ffmpeg produced no output at {out_path}")
        self.logger.info("concat_ok", inputs=len(files), out_path=out_path)
        return out_path

    def measure_duration(self, path: str) -> Optional[float]:
        """Duration in seconds via ffprobe; None when it cannot be read."""
        cmd = [
            self.config.ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            path,
        ]
        proc = run_command(cmd, self.logger, allow_failure=True)
        if proc.returncode != 0:
            self.logger.debug("measure_duration_failed", path=path, returncode=proc.returncode)
            return None
        try:
            return round(float((proc.stdout or "").strip()), 3)
        except ValueError:
            return None

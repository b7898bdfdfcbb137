#!/usr/bin/env python3
from __future__ import annotations

"""Audio stage: chunk the script by persona and synthesize each chunk."""

import glob
import json
import os
from dataclasses import dataclass
from typing import Any, List, Optional

from .audio_mixer import AudioMixer
from .config import AudioConfig
from .dialogue_chunker import chunk_dialogue, chunk_file_name
from .errors import ContentError
from .io_utils import atomic_write_bytes
from .orchestrator import StageContext, StageResult
from .schema import DialogueEntry, validate_script_payload


def load_script_file(path: str) -> List[DialogueEntry]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except OSError as exc:
        raise ContentError(f"Script file not readable: {path}: {exc}") from exc
    except ValueError as exc:
        raise ContentError(f"Script file is not valid JSON: {path}: {exc}") from exc
    return validate_script_payload(payload)


def _clear_stale_chunks(chunks_dir: str) -> int:
    removed = 0
    for path in glob.glob(os.path.join(chunks_dir, "*.mp3")):
        os.remove(path)
        removed += 1
    return removed


@dataclass
class AudioStage:
    synthesizer: Any
    config: AudioConfig
    tts_model: str
    mixer: Optional[AudioMixer] = None

    def __call__(self, ctx: StageContext) -> StageResult:
        script_path = ctx.record.get("script_file_path") or ctx.paths.script_file
        entries = load_script_file(script_path)
        chunks = chunk_dialogue(entries, self.config.max_script_chars)
        voices = self.config.voices_by_persona()
        instructions = self.config.instructions_by_persona()

        os.makedirs(ctx.paths.chunks_dir, exist_ok=True)
        removed = _clear_stale_chunks(ctx.paths.chunks_dir)
        ctx.logger.info("audio_chunks_planned", chunks=len(chunks), entries=len(entries), removed_stale=removed)

        relative_files: List[str] = []
        durations: List[Optional[float]] = []
        progress = {"done": 0, "total": len(chunks)}
        with ctx.logger.heartbeat("audio_synthesis", status_fn=lambda: dict(progress)):
            for idx, chunk in enumerate(chunks, start=1):
                name = chunk_file_name(idx, chunk)
                path = os.path.join(ctx.paths.chunks_dir, name)
                audio = self.synthesizer.synthesize(
                    chunk.text,
                    voices[chunk.persona],
                    self.tts_model,
                    instructions=instructions.get(chunk.persona),
                )
                atomic_write_bytes(path, audio)
                relative_files.append(os.path.relpath(path, ctx.paths.episode_dir))
                if self.mixer is not None:
                    durations.append(self.mixer.measure_duration(path))
                progress["done"] = idx
                ctx.logger.debug("audio_chunk_written", index=idx, persona=chunk.persona, chars=chunk.char_count)

        total_duration = None
        if durations and all(d is not None for d in durations):
            total_duration = round(sum(d for d in durations if d is not None), 3)
        return StageResult(
            fields={
                "audio_chunks_dir": ctx.paths.chunks_dir,
                "audio_chunk_count": len(chunks),
                "audio_files": relative_files,
                "audio_voice_operator": self.config.operator_voice,
                "audio_voice_historian": self.config.historian_voice,
                "audio_voice_narrator": self.config.narrator_voice,
                "audio_total_duration_sec": total_duration,
            }
        )

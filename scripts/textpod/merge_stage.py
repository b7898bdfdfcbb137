#!/usr/bin/env python3
from __future__ import annotations

"""Merge stage: join the chunk files (plus bumpers) into the episode MP3."""

import glob
import os
from dataclasses import dataclass
from typing import List

from .audio_mixer import AudioMixer, file_sha256
from .errors import ContentError
from .orchestrator import StageContext, StageResult


def resolve_chunk_files(ctx: StageContext) -> List[str]:
    """Chunk paths from the audio stage record, else the sorted chunk directory."""
    recorded = ctx.record.get("audio_files") or []
    if recorded:
        files = [os.path.join(ctx.paths.episode_dir, rel) for rel in recorded]
    else:
        chunks_dir = ctx.record.get("audio_chunks_dir") or ctx.paths.chunks_dir
        files = sorted(glob.glob(os.path.join(chunks_dir, "*.mp3")))
    if not files:
        raise ContentError("No audio chunks found to merge")
    missing = [path for path in files if not os.path.isfile(path)]
    if missing:
        raise ContentError(f"Audio chunk(s) missing: {', '.join(missing[:5])}")
    return files


@dataclass
class MergeStage:
    mixer: AudioMixer

    def __call__(self, ctx: StageContext) -> StageResult:
        chunk_files = resolve_chunk_files(ctx)
        inputs = self.mixer.with_bumpers(chunk_files)
        out_path = ctx.paths.merged_file
        self.mixer.concat(inputs, out_path, list_path=ctx.paths.concat_list)
        duration = self.mixer.measure_duration(out_path)
        size = os.path.getsize(out_path)
        ctx.logger.info("merge_written", path=out_path, inputs=len(inputs), bytes=size, duration_sec=duration)
        return StageResult(
            fields={
                "merged_audio_path": out_path,
                "merged_audio_duration_sec": duration,
                "merged_audio_checksum": file_sha256(out_path),
                "merged_audio_bytes": size,
            }
        )

#!/usr/bin/env python3
from __future__ import annotations

"""The closed set of pipeline stages, their order and status values."""

from typing import Dict, Optional, Tuple

from .errors import ConfigurationError

STAGE_METADATA = "metadata"
STAGE_SCRIPT = "script"
STAGE_AUDIO = "audio"
STAGE_MERGE = "merge"
STAGE_PUBLISH = "publish"

STAGE_ORDER: Tuple[str, ...] = (
    STAGE_METADATA,
    STAGE_SCRIPT,
    STAGE_AUDIO,
    STAGE_MERGE,
    STAGE_PUBLISH,
)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in-progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)

# Result columns owned by each stage, besides `<stage>_status` and `<stage>_error`.
STAGE_FIELDS: Dict[str, Tuple[str, ...]] = {
    STAGE_METADATA: (
        "metadata_model",
        "metadata_prompt_version",
        "metadata_title",
        "metadata_summary",
        "metadata_published_at",
        "metadata_related_links",
        "metadata_file_path",
        "metadata_input_tokens",
        "metadata_output_tokens",
    ),
    STAGE_SCRIPT: (
        "script_model",
        "script_file_path",
        "script_segment_count",
        "script_input_tokens",
        "script_output_tokens",
    ),
    STAGE_AUDIO: (
        "audio_chunks_dir",
        "audio_chunk_count",
        "audio_files",
        "audio_voice_operator",
        "audio_voice_historian",
        "audio_voice_narrator",
        "audio_total_duration_sec",
    ),
    STAGE_MERGE: (
        "merged_audio_path",
        "merged_audio_duration_sec",
        "merged_audio_checksum",
        "merged_audio_bytes",
    ),
    STAGE_PUBLISH: (
        "publish_feed_local_path",
        "publish_audio_remote_path",
        "publish_feed_remote_path",
        "publish_item_guid",
        "publish_at",
    ),
}


def validate_stage(name: str) -> str:
    """Return the canonical stage name or raise ConfigurationError."""
    stage = str(name or "").strip().lower()
    if stage not in STAGE_ORDER:
        raise ConfigurationError(f"Unknown stage {name!r}; expected one of {', '.join(STAGE_ORDER)}")
    return stage


def stage_index(name: str) -> int:
    return STAGE_ORDER.index(validate_stage(name))


def previous_stage(name: str) -> Optional[str]:
    idx = stage_index(name)
    return STAGE_ORDER[idx - 1] if idx > 0 else None


def next_stage(name: str) -> Optional[str]:
    idx = stage_index(name)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


def stages_from(name: str, stop_after: Optional[str] = None) -> Tuple[str, ...]:
    """Stages from `name` onward, optionally ending with `stop_after`."""
    start = stage_index(name)
    end = len(STAGE_ORDER)
    if stop_after is not None:
        end = stage_index(stop_after) + 1
        if end <= start:
            raise ConfigurationError(f"Stage {stop_after!r} comes before start stage {name!r}")
    return STAGE_ORDER[start:end]


def status_column(stage: str) -> str:
    return f"{validate_stage(stage)}_status"


def error_column(stage: str) -> str:
    return f"{validate_stage(stage)}_error"

#!/usr/bin/env python3
from __future__ import annotations

"""Stage sequencing with skip-if-done, prerequisite checks, force and resume.

Every stage invocation re-reads the episode row, so re-running after a crash
picks up exactly where the last completed stage left off.
"""

import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .config import PipelineSettings
from .episode_store import EpisodeRecord, EpisodeStore
from .errors import ConfigurationError, PipelineError, PrerequisiteError, classify_exception
from .logging_utils import Logger
from .stages import (
    STAGE_ORDER,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    previous_stage,
    stages_from,
    validate_stage,
)

DEFAULT_OUTPUT_ROOT = os.path.join("resources", "episodes")

OUTCOME_SKIPPED = "skipped"
OUTCOME_COMPLETED = "completed"
OUTCOME_PENDING = "pending"


@dataclass(frozen=True)
class EpisodePaths:
    """On-disk layout of one episode under the output root."""

    episode_dir: str
    metadata_file: str
    script_file: str
    chunks_dir: str
    concat_list: str
    merged_file: str

    @staticmethod
    def for_episode(output_root: str, episode_id: str) -> "EpisodePaths":
        episode_dir = os.path.join(output_root, episode_id)
        return EpisodePaths(
            episode_dir=episode_dir,
            metadata_file=os.path.join(episode_dir, "metadata.json"),
            script_file=os.path.join(episode_dir, "script.json"),
            chunks_dir=os.path.join(episode_dir, "chunks"),
            concat_list=os.path.join(episode_dir, "concat.txt"),
            merged_file=os.path.join(episode_dir, f"{episode_id}.mp3"),
        )


@dataclass(frozen=True)
class StageContext:
    record: EpisodeRecord
    settings: Optional[PipelineSettings]
    paths: EpisodePaths
    logger: Logger
    force: bool = False
    dry_run: bool = False

    @property
    def episode_id(self) -> str:
        return self.record.episode_id


@dataclass(frozen=True)
class StageResult:
    """Handler output; `completed=False` leaves the stage pending (dry run)."""

    fields: Dict[str, Any] = field(default_factory=dict)
    completed: bool = True


@dataclass(frozen=True)
class StageRun:
    stage: str
    outcome: str
    elapsed_ms: int


StageHandler = Callable[[StageContext], StageResult]


class PipelineOrchestrator:
    def __init__(
        self,
        store: EpisodeStore,
        handlers: Mapping[str, StageHandler],
        logger: Logger,
        force: bool = False,
        dry_run: bool = False,
        *,
        settings: Optional[PipelineSettings] = None,
        output_root: Optional[str] = None,
    ) -> None:
        missing = [stage for stage in STAGE_ORDER if stage not in handlers]
        if missing:
            raise ConfigurationError(f"No handler registered for stage(s): {', '.join(missing)}")
        self.store = store
        self.handlers = dict(handlers)
        self.logger = logger
        self.force = bool(force)
        self.dry_run = bool(dry_run)
        self.settings = settings
        if output_root is None:
            output_root = settings.output_root if settings is not None else DEFAULT_OUTPUT_ROOT
        self.output_root = output_root
        self.failed_stage: Optional[str] = None

    def run_from(self, episode_id: str, start_stage: str, stop_after: Optional[str] = None) -> List[StageRun]:
        """Run `start_stage` and every later stage, in order."""
        return self._run_sequence(episode_id, stages_from(start_stage, stop_after))

    def run_only(self, episode_id: str, stage: str) -> List[StageRun]:
        """Run exactly one stage; its predecessor must still be completed."""
        return self._run_sequence(episode_id, (validate_stage(stage),))

    def _run_sequence(self, episode_id: str, stages: Sequence[str]) -> List[StageRun]:
        self.failed_stage = None
        log = self.logger.bind(episode_id=episode_id)
        if self.force:
            first = stages[0]
            if first == STAGE_ORDER[0]:
                self.store.reset(episode_id)
            else:
                self.store.reset_stages(episode_id, stages_from(first))
            log.info("force_reset", from_stage=first)
        runs: List[StageRun] = []
        for stage in stages:
            runs.append(self._run_stage(episode_id, stage))
        log.info("pipeline_finished", stages=[run.stage for run in runs], outcomes=[run.outcome for run in runs])
        return runs

    def _run_stage(self, episode_id: str, stage: str) -> StageRun:
        record = self.store.get(episode_id)
        log = self.logger.bind(episode_id=episode_id, stage=stage)
        if record.status(stage) == STATUS_COMPLETED and not self.force:
            log.info("stage_skipped", reason="already_completed")
            return StageRun(stage=stage, outcome=OUTCOME_SKIPPED, elapsed_ms=0)

        prev = previous_stage(stage)
        if prev is not None and record.status(prev) != STATUS_COMPLETED:
            self.failed_stage = stage
            raise PrerequisiteError(
                f"Stage {stage} requires {prev} to be completed (current status: {record.status(prev)})",
                stage=stage,
            )

        record = self.store.update_stage(episode_id, stage, STATUS_IN_PROGRESS)
        ctx = StageContext(
            record=record,
            settings=self.settings,
            paths=EpisodePaths.for_episode(self.output_root, episode_id),
            logger=log,
            force=self.force,
            dry_run=self.dry_run,
        )
        started = time.time()
        try:
            with log.timed("stage"):
                result = self.handlers[stage](ctx)
        except BaseException as exc:
            message = str(exc) or exc.__class__.__name__
            self.store.update_stage(episode_id, stage, STATUS_FAILED, error=message)
            self.failed_stage = stage
            if isinstance(exc, PipelineError) and exc.stage is None:
                exc.stage = stage
            log.error("stage_failed", error_kind=classify_exception(exc), error=message)
            raise

        if result is None:
            result = StageResult()
        elapsed_ms = int((time.time() - started) * 1000)
        if result.completed:
            self.store.update_stage(episode_id, stage, STATUS_COMPLETED, result.fields)
            log.info("stage_completed", elapsed_ms=elapsed_ms)
            return StageRun(stage=stage, outcome=OUTCOME_COMPLETED, elapsed_ms=elapsed_ms)
        self.store.update_stage(episode_id, stage, STATUS_PENDING, result.fields)
        log.info("stage_left_pending", elapsed_ms=elapsed_ms, dry_run=self.dry_run)
        return StageRun(stage=stage, outcome=OUTCOME_PENDING, elapsed_ms=elapsed_ms)

#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import signal
import sqlite3
import sys
from typing import Dict, List, Optional, Tuple

from textpod.audio_mixer import AudioMixer
from textpod.audio_stage import AudioStage
from textpod.config import (
    AudioConfig,
    GeneratorConfig,
    LoggingConfig,
    PipelineSettings,
    PublishConfig,
    StoreConfig,
)
from textpod.episode_store import EpisodeRecord, EpisodeStore
from textpod.errors import ConfigurationError, PipelineError, classify_exception
from textpod.logging_utils import Logger
from textpod.merge_stage import MergeStage
from textpod.metadata_stage import MetadataStage
from textpod.openai_client import OpenAIClient
from textpod.orchestrator import PipelineOrchestrator, StageHandler, StageRun
from textpod.publish_stage import PublishStage
from textpod.script_stage import ScriptStage
from textpod.stages import (
    STAGE_AUDIO,
    STAGE_MERGE,
    STAGE_METADATA,
    STAGE_ORDER,
    STAGE_PUBLISH,
    STAGE_SCRIPT,
    STATUS_COMPLETED,
    stages_from,
)
from textpod.uploader import S3Uploader

GENERATOR_STAGES = {STAGE_METADATA, STAGE_SCRIPT, STAGE_AUDIO}

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_INTERRUPTED = 130


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be positive")
    return parsed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Turn a URL into a published podcast episode (metadata, script, audio, merge, publish)."
    )
    target = parser.add_argument_group("episode")
    target.add_argument("--url", default=None, help="Source URL; creates the episode on first use")
    target.add_argument("--episode-id", default=None, help="Resume an existing episode by id")
    target.add_argument("--list", action="store_true", help="List stored episodes and stage statuses")

    stages = parser.add_argument_group("stages")
    stages.add_argument("--start-stage", choices=STAGE_ORDER, default=STAGE_METADATA)
    stages.add_argument("--run-stage", choices=STAGE_ORDER, default=None, help="Run exactly one stage")
    stages.add_argument("--no-publish", action="store_true", help="Stop after the merge stage")

    paths = parser.add_argument_group("paths")
    paths.add_argument("--output-root", default=None, help="Episode output root (default resources/episodes)")
    paths.add_argument("--db-path", default=None, help="SQLite episode database (default data/episodes.db)")

    models = parser.add_argument_group("models and prompts")
    models.add_argument("--metadata-model", default=None)
    models.add_argument("--script-model", default=None)
    models.add_argument("--tts-model", default=None)
    models.add_argument("--metadata-system-prompt", default=None)
    models.add_argument("--metadata-prompt-template", default=None)
    models.add_argument("--script-system-prompt", default=None)
    models.add_argument("--script-prompt-template", default=None)

    audio = parser.add_argument_group("audio")
    audio.add_argument("--operator-voice", default=None)
    audio.add_argument("--historian-voice", default=None)
    audio.add_argument("--narrator-voice", default=None)
    audio.add_argument("--max-script-chars", type=_positive_int, default=None)

    publish = parser.add_argument_group("publishing")
    publish.add_argument("--s3cfg", default=None, help="s3cmd config file")
    publish.add_argument("--feed-source", choices=["remote", "local"], default=None)

    run = parser.add_argument_group("run")
    run.add_argument("--force", action="store_true", help="Regenerate stages even when completed")
    run.add_argument("--dry-run", action="store_true", help="Write the feed locally but upload nothing")
    run.add_argument("--verbose", action="store_true")
    run.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace, log_cfg: LoggingConfig) -> PipelineSettings:
    output_root = args.output_root or os.environ.get("OUTPUT_ROOT") or os.path.join("resources", "episodes")
    return PipelineSettings(
        output_root=os.path.expanduser(output_root),
        generator=GeneratorConfig.from_env(
            metadata_model=args.metadata_model,
            script_model=args.script_model,
            tts_model=args.tts_model,
            metadata_system_prompt=args.metadata_system_prompt,
            metadata_prompt_template=args.metadata_prompt_template,
            script_system_prompt=args.script_system_prompt,
            script_prompt_template=args.script_prompt_template,
        ),
        audio=AudioConfig.from_env(
            operator_voice=args.operator_voice,
            historian_voice=args.historian_voice,
            narrator_voice=args.narrator_voice,
            max_script_chars=args.max_script_chars,
        ),
        publish=PublishConfig.from_env(s3cfg=args.s3cfg, feed_source=args.feed_source),
        store=StoreConfig.from_env(database_path=args.db_path),
        logging=log_cfg,
        force=bool(args.force),
        dry_run=bool(args.dry_run),
    )


def build_handlers(settings: PipelineSettings, logger: Logger) -> Dict[str, StageHandler]:
    client = OpenAIClient.from_config(settings.generator, logger=logger)
    mixer = AudioMixer(config=settings.audio, logger=logger)
    uploader = S3Uploader(config=settings.publish, logger=logger)
    return {
        STAGE_METADATA: MetadataStage(generator=client, config=settings.generator),
        STAGE_SCRIPT: ScriptStage(generator=client, config=settings.generator),
        STAGE_AUDIO: AudioStage(
            synthesizer=client,
            config=settings.audio,
            tts_model=settings.generator.tts_model,
            mixer=mixer,
        ),
        STAGE_MERGE: MergeStage(mixer=mixer),
        STAGE_PUBLISH: PublishStage(
            uploader=uploader,
            config=settings.publish,
            local_feed_path=settings.local_feed_path(),
        ),
    }


def resolve_stage_plan(args: argparse.Namespace) -> Tuple[Tuple[str, ...], bool]:
    """Return the stages this invocation may run and whether it is a single-stage run."""
    if args.run_stage:
        if args.no_publish and args.run_stage == STAGE_PUBLISH:
            raise ConfigurationError("--run-stage publish cannot be combined with --no-publish")
        return (args.run_stage,), True
    stop_after = STAGE_MERGE if args.no_publish else None
    if stop_after is not None and args.start_stage == STAGE_PUBLISH:
        raise ConfigurationError("--start-stage publish cannot be combined with --no-publish")
    return stages_from(args.start_stage, stop_after), False


def resolve_episode(store: EpisodeStore, args: argparse.Namespace, logger: Logger) -> EpisodeRecord:
    if args.url:
        record, created = store.find_or_create(args.url)
        if args.episode_id and args.episode_id != record.episode_id:
            raise ConfigurationError(
                f"--episode-id {args.episode_id} does not match the episode for this URL ({record.episode_id})"
            )
        logger.info(
            "episode_created" if created else "episode_found",
            episode_id=record.episode_id,
            url_hash=record.url_hash,
            normalized_url=record.normalized_url,
        )
        return record
    if args.episode_id:
        record = store.find_by_episode_id(args.episode_id)
        if record is None:
            raise ConfigurationError(f"Unknown episode id: {args.episode_id}")
        logger.info("episode_found", episode_id=record.episode_id, url_hash=record.url_hash)
        return record
    raise ConfigurationError("Either --url or --episode-id is required")


def needs_generator(record: EpisodeRecord, stages: Tuple[str, ...], force: bool) -> bool:
    """True when a generator-backed stage will actually run."""
    for stage in stages:
        if stage in GENERATOR_STAGES and (force or record.status(stage) != STATUS_COMPLETED):
            return True
    return False


def format_episode_line(record: EpisodeRecord) -> str:
    statuses = " ".join(f"{stage}={record.status(stage)}" for stage in STAGE_ORDER)
    title = record.get("metadata_title", "")
    return f"{record.episode_id}\t{statuses}\t{record.url}\t{title}".rstrip()


def _print_episodes(store: EpisodeStore) -> None:
    for record in store.list_episodes():
        print(format_episode_line(record))


def _install_sigterm(logger: Logger) -> Optional[object]:
    sigterm = getattr(signal, "SIGTERM", None)
    if sigterm is None:
        return None

    def _handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.warn("signal_received", signal=signum)
        raise InterruptedError(f"Received signal {signum}")

    try:
        return signal.signal(sigterm, _handler)
    except ValueError:
        # Not running in the main thread.
        return None


def _summarize(runs: List[StageRun]) -> Dict[str, str]:
    return {run.stage: run.outcome for run in runs}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    log_cfg = LoggingConfig.from_env(verbose=args.verbose, debug=args.debug)
    logger = Logger.create(log_cfg)

    store: Optional[EpisodeStore] = None
    try:
        settings = build_settings(args, log_cfg)
        store = EpisodeStore(settings.store.database_path)
        if args.list:
            _print_episodes(store)
            store.close()
            return EXIT_OK
        stages, single = resolve_stage_plan(args)
        settings.audio.validate()
        settings.publish.validate()
        record = resolve_episode(store, args, logger)
        settings.generator.validate(require_api_key=needs_generator(record, stages, settings.force))
        orchestrator = PipelineOrchestrator(
            store,
            build_handlers(settings, logger),
            logger,
            force=settings.force,
            dry_run=settings.dry_run,
            settings=settings,
        )
    except ConfigurationError as exc:
        logger.error("configuration_error", error=str(exc), error_kind=exc.error_kind)
        if store is not None:
            store.close()
        return EXIT_CONFIGURATION
    except sqlite3.Error as exc:
        logger.error("store_error", error=str(exc), error_kind=classify_exception(exc))
        if store is not None:
            store.close()
        return EXIT_CONFIGURATION

    previous_sigterm = _install_sigterm(logger)
    episode_id = record.episode_id
    try:
        if single:
            runs = orchestrator.run_only(episode_id, stages[0])
        else:
            runs = orchestrator.run_from(episode_id, stages[0], stop_after=stages[-1])
    except (InterruptedError, KeyboardInterrupt) as exc:
        logger.warn("pipeline_interrupted", episode_id=episode_id, stage=orchestrator.failed_stage, error=str(exc))
        return EXIT_INTERRUPTED
    except PipelineError as exc:
        logger.error(
            "pipeline_failed",
            episode_id=episode_id,
            stage=exc.stage or orchestrator.failed_stage,
            error_kind=exc.error_kind,
            error=str(exc),
        )
        return EXIT_STAGE_FAILED
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "pipeline_failed",
            episode_id=episode_id,
            stage=orchestrator.failed_stage,
            error_kind=classify_exception(exc),
            error=str(exc) or exc.__class__.__name__,
        )
        return EXIT_STAGE_FAILED
    finally:
        if previous_sigterm is not None:
            signal.signal(signal.SIGTERM, previous_sigterm)
        store.close()

    logger.info("pipeline_completed", episode_id=episode_id, outcomes=_summarize(runs))
    print(episode_id)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

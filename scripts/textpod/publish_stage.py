#!/usr/bin/env python3
from __future__ import annotations

"""Publish stage: upsert the feed item, render the feed and upload both files.

The merged audio is uploaded before the feed so the feed never points at a
missing enclosure, and the local feed is only rewritten once the audio is up.
With `dry_run` the local feed is still written but nothing is uploaded and
the stage stays pending. An item left in the feed by such an unfinished
publish of the same episode is replaced without `--force`.
"""

import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import PublishConfig
from .errors import ContentError, ExternalToolError, PipelineError, classify_exception
from .feed_merger import Enclosure, FeedDocument, FeedItem, merge_feed_item
from .io_utils import atomic_write_text, read_text_file_with_fallback
from .orchestrator import StageContext, StageResult
from .rss_feed import parse_feed_xml, render_feed_xml
from .stages import STAGE_PUBLISH, STATUS_COMPLETED
from .uploader import S3Uploader

FEED_MIME_TYPE = "application/rss+xml"
AUDIO_MIME_TYPE = "audio/mpeg"


def fetch_remote_feed(url: str, *, timeout_seconds: int = 30) -> Optional[str]:
    """Return the published feed body, or None when it does not exist yet."""
    try:
        with urllib.request.urlopen(url, timeout=timeout_seconds) as resp:
            return resp.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        if exc.code in {403, 404}:
            return None
        raise PipelineError(
            f"Could not load existing feed {url}: HTTP {exc.code}",
            error_kind=classify_exception(exc),
        ) from exc
    except (urllib.error.URLError, OSError) as exc:
        raise PipelineError(
            f"Could not load existing feed {url}: {exc}",
            error_kind=classify_exception(exc),
        ) from exc


def _utc_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class PublishStage:
    uploader: S3Uploader
    config: PublishConfig
    local_feed_path: str
    fetch_feed: Callable[[str], Optional[str]] = fetch_remote_feed
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return self.clock() if self.clock is not None else datetime.now(timezone.utc)

    def load_existing_feed(self, ctx: StageContext) -> Optional[FeedDocument]:
        if self.config.feed_source == "local":
            if not os.path.isfile(self.local_feed_path):
                ctx.logger.info("feed_not_found", source="local", path=self.local_feed_path)
                return None
            text, _encoding = read_text_file_with_fallback(self.local_feed_path)
            return parse_feed_xml(text)
        feed_url = self.config.public_url(self.config.feed_key)
        text = self.fetch_feed(feed_url)
        if text is None:
            ctx.logger.info("feed_not_found", source="remote", url=feed_url)
            return None
        return parse_feed_xml(text)

    def _build_item(self, ctx: StageContext, audio_path: str, now: datetime) -> FeedItem:
        record = ctx.record
        audio_url = self.config.public_url(self.config.audio_key(ctx.episode_id))
        return FeedItem(
            guid=ctx.episode_id,
            title=record.get("metadata_title") or ctx.episode_id,
            description=record.get("metadata_summary", ""),
            pub_date=now,
            enclosure=Enclosure(url=audio_url, length=os.path.getsize(audio_path), type=AUDIO_MIME_TYPE),
            link=record.url,
            duration_sec=record.get("merged_audio_duration_sec"),
        )

    def _upload_cover_art(self, ctx: StageContext) -> None:
        path = self.config.cover_art_path
        if not path:
            return
        if not os.path.isfile(path):
            ctx.logger.warn("cover_art_missing_skipped", path=path)
            return
        try:
            self.uploader.upload(path, self.config.cover_art_key)
        except ExternalToolError as exc:
            ctx.logger.warn("cover_art_upload_failed", error=str(exc))

    def _is_unfinished_own_item(self, ctx: StageContext, previous: FeedItem, item: FeedItem) -> bool:
        """True when `previous` was staged by an earlier dry run or failed upload of this episode."""
        if ctx.record.status(STAGE_PUBLISH) == STATUS_COMPLETED:
            return False
        return previous.enclosure.url == item.enclosure.url

    def __call__(self, ctx: StageContext) -> StageResult:
        audio_path = ctx.record.get("merged_audio_path") or ctx.paths.merged_file
        if not os.path.isfile(audio_path):
            raise ContentError(f"Merged audio not found: {audio_path}")
        now = self._now()

        existing = self.load_existing_feed(ctx)
        item = self._build_item(ctx, audio_path, now)
        previous = existing.find(ctx.episode_id) if existing is not None else None
        restaging = previous is not None and self._is_unfinished_own_item(ctx, previous, item)
        document = merge_feed_item(existing, item, ctx.episode_id, ctx.force or restaging, self.config.feed)
        if previous is not None:
            ctx.logger.info("feed_item_replaced", guid=ctx.episode_id, forced=ctx.force)

        feed_url = self.config.public_url(self.config.feed_key)
        feed_xml = render_feed_xml(document, now, self_url=feed_url)
        fields = {
            "publish_feed_local_path": self.local_feed_path,
            "publish_item_guid": ctx.episode_id,
        }
        if ctx.dry_run:
            atomic_write_text(self.local_feed_path, feed_xml)
            ctx.logger.info("publish_dry_run", feed_path=self.local_feed_path, items=len(document.items))
            return StageResult(fields=fields, completed=False)

        audio_key = self.config.audio_key(ctx.episode_id)
        audio_url = self.uploader.upload(audio_path, audio_key, mime_type=AUDIO_MIME_TYPE)
        atomic_write_text(self.local_feed_path, feed_xml)
        feed_url = self.uploader.upload(self.local_feed_path, self.config.feed_key, mime_type=FEED_MIME_TYPE)
        self._upload_cover_art(ctx)
        fields.update(
            {
                "publish_audio_remote_path": audio_url,
                "publish_feed_remote_path": feed_url,
                "publish_at": _utc_iso(now),
            }
        )
        return StageResult(fields=fields)

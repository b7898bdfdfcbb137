#!/usr/bin/env python3
from __future__ import annotations

"""Pure upsert of one episode item into a podcast feed document."""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from .config import FeedDefaults
from .errors import DuplicateError

BRANDING_FIELDS = ("title", "link", "description", "language", "author", "image_url")


@dataclass(frozen=True)
class Enclosure:
    url: str
    length: int
    type: str = "audio/mpeg"


@dataclass(frozen=True)
class FeedItem:
    guid: str
    title: str
    description: str
    pub_date: datetime
    enclosure: Enclosure
    link: str = ""
    duration_sec: Optional[float] = None


@dataclass(frozen=True)
class FeedDocument:
    title: str = ""
    link: str = ""
    description: str = ""
    language: str = ""
    author: str = ""
    image_url: str = ""
    items: Tuple[FeedItem, ...] = ()
    extra_channel_xml: Tuple[str, ...] = ()

    def find(self, guid: str) -> Optional[FeedItem]:
        for item in self.items:
            if item.guid == guid:
                return item
        return None


def default_document(defaults: FeedDefaults) -> FeedDocument:
    return FeedDocument(**{name: getattr(defaults, name) for name in BRANDING_FIELDS})


def _fill_branding(document: FeedDocument, defaults: FeedDefaults) -> FeedDocument:
    missing = {
        name: getattr(defaults, name)
        for name in BRANDING_FIELDS
        if not str(getattr(document, name) or "").strip()
    }
    return replace(document, **missing) if missing else document


def merge_feed_item(
    document: Optional[FeedDocument],
    item: FeedItem,
    episode_id: str,
    force: bool,
    defaults: FeedDefaults,
) -> FeedDocument:
    """Return a new document holding exactly one item for `episode_id`.

    An existing item with that guid raises DuplicateError unless `force` is
    set, in which case it is dropped. The new item is appended. Branding is
    only filled where the document leaves it empty.
    """
    if item.guid != episode_id:
        raise ValueError(f"item guid {item.guid!r} does not match episode id {episode_id!r}")
    base = default_document(defaults) if document is None else _fill_branding(document, defaults)
    if base.find(episode_id) is not None and not force:
        raise DuplicateError(episode_id, stage="publish")
    kept = tuple(existing for existing in base.items if existing.guid != episode_id)
    return replace(base, items=kept + (item,))

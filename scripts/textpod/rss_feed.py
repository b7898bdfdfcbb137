#!/usr/bin/env python3
from __future__ import annotations

"""RSS 2.0 (with iTunes tags) reading and writing for `FeedDocument`.

Channel children this module does not model, such as `itunes:category`, are
kept as raw XML and written back unchanged.
"""

import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import List, Optional

from .errors import ContentError
from .feed_merger import Enclosure, FeedDocument, FeedItem

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
ATOM_NS = "http://www.w3.org/2005/Atom"

ET.register_namespace("itunes", ITUNES_NS)
ET.register_namespace("atom", ATOM_NS)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Channel children rebuilt from `FeedDocument` fields on every render.
_RENDERED_CHANNEL_TAGS = frozenset(
    {
        "title",
        "link",
        "description",
        "language",
        "lastBuildDate",
        "image",
        "item",
        f"{{{ATOM_NS}}}link",
        f"{{{ITUNES_NS}}}author",
        f"{{{ITUNES_NS}}}summary",
        f"{{{ITUNES_NS}}}explicit",
        f"{{{ITUNES_NS}}}image",
    }
)


def _text(element: Optional[ET.Element], path: str) -> str:
    if element is None:
        return ""
    return (element.findtext(path) or "").strip()


def _parse_pub_date(value: str) -> datetime:
    if not value:
        return _EPOCH
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_duration(value: str) -> Optional[float]:
    """Accept `SS`, `MM:SS` or `HH:MM:SS`."""
    text = str(value or "").strip()
    if not text:
        return None
    total = 0.0
    try:
        for part in text.split(":"):
            total = total * 60 + float(part)
    except ValueError:
        return None
    return total


def format_duration(seconds: float) -> str:
    whole = int(round(seconds))
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _parse_item(element: ET.Element) -> FeedItem:
    enclosure_el = element.find("enclosure")
    enclosure = Enclosure(url="", length=0)
    if enclosure_el is not None:
        try:
            length = int(enclosure_el.get("length") or 0)
        except ValueError:
            length = 0
        enclosure = Enclosure(
            url=enclosure_el.get("url") or "",
            length=length,
            type=enclosure_el.get("type") or "audio/mpeg",
        )
    guid = _text(element, "guid") or _text(element, "link") or enclosure.url
    return FeedItem(
        guid=guid,
        title=_text(element, "title"),
        description=_text(element, "description"),
        pub_date=_parse_pub_date(_text(element, "pubDate")),
        enclosure=enclosure,
        link=_text(element, "link"),
        duration_sec=parse_duration(_text(element, f"{{{ITUNES_NS}}}duration")),
    )


def parse_feed_xml(text: str) -> FeedDocument:
    """Read an RSS 2.0 channel into a `FeedDocument`."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ContentError(f"Existing feed is not valid XML: {exc}") from exc
    channel = root.find("channel")
    if channel is None:
        raise ContentError("Existing feed has no <channel> element")

    image_url = _text(channel, "image/url")
    if not image_url:
        itunes_image = channel.find(f"{{{ITUNES_NS}}}image")
        if itunes_image is not None:
            image_url = (itunes_image.get("href") or "").strip()

    items: List[FeedItem] = [_parse_item(el) for el in channel.findall("item")]
    extras: List[str] = []
    for child in channel:
        if not isinstance(child.tag, str) or child.tag in _RENDERED_CHANNEL_TAGS:
            continue
        child.tail = None
        extras.append(ET.tostring(child, encoding="unicode"))
    return FeedDocument(
        title=_text(channel, "title"),
        link=_text(channel, "link"),
        description=_text(channel, "description"),
        language=_text(channel, "language"),
        author=_text(channel, f"{{{ITUNES_NS}}}author"),
        image_url=image_url,
        items=tuple(items),
        extra_channel_xml=tuple(extras),
    )


def _render_item(channel: ET.Element, item: FeedItem) -> None:
    el = ET.SubElement(channel, "item")
    ET.SubElement(el, "title").text = item.title
    ET.SubElement(el, "description").text = item.description
    if item.link:
        ET.SubElement(el, "link").text = item.link
    ET.SubElement(el, "guid", {"isPermaLink": "false"}).text = item.guid
    ET.SubElement(el, "pubDate").text = format_datetime(item.pub_date)
    ET.SubElement(
        el,
        "enclosure",
        {
            "url": item.enclosure.url,
            "length": str(int(item.enclosure.length)),
            "type": item.enclosure.type,
        },
    )
    ET.SubElement(el, f"{{{ITUNES_NS}}}summary").text = item.description
    if item.duration_sec is not None:
        ET.SubElement(el, f"{{{ITUNES_NS}}}duration").text = format_duration(item.duration_sec)


def render_feed_xml(
    document: FeedDocument,
    now: Optional[datetime] = None,
    *,
    self_url: Optional[str] = None,
) -> str:
    """Serialize the document; items keep their stored order."""
    moment = now or datetime.now(timezone.utc)
    rss = ET.Element("rss", {"version": "2.0"})
    channel = ET.SubElement(rss, "channel")
    ET.SubElement(channel, "title").text = document.title
    ET.SubElement(channel, "link").text = document.link
    ET.SubElement(channel, "description").text = document.description
    ET.SubElement(channel, "language").text = document.language
    ET.SubElement(channel, "lastBuildDate").text = format_datetime(moment)
    ET.SubElement(
        channel,
        f"{{{ATOM_NS}}}link",
        {"href": self_url or document.link, "rel": "self", "type": "application/rss+xml"},
    )
    ET.SubElement(channel, f"{{{ITUNES_NS}}}author").text = document.author
    ET.SubElement(channel, f"{{{ITUNES_NS}}}summary").text = document.description
    ET.SubElement(channel, f"{{{ITUNES_NS}}}explicit").text = "false"
    if document.image_url:
        ET.SubElement(channel, f"{{{ITUNES_NS}}}image", {"href": document.image_url})
        image = ET.SubElement(channel, "image")
        ET.SubElement(image, "url").text = document.image_url
        ET.SubElement(image, "title").text = document.title
        ET.SubElement(image, "link").text = document.link
    for extra in document.extra_channel_xml:
        channel.append(ET.fromstring(extra))
    for item in document.items:
        _render_item(channel, item)

    ET.indent(rss, space="  ")
    body = ET.tostring(rss, encoding="unicode")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"

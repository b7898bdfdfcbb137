#!/usr/bin/env python3
from __future__ import annotations

"""URL normalization and the episode identifiers derived from it."""

import hashlib
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ConfigurationError

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Canonical form used for deduplication.

    Lowercases scheme and host, drops default ports and the fragment, strips a
    trailing slash from non-root paths and sorts query parameters by name.
    """
    text = str(url or "").strip()
    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid URL: {url}") from exc
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in _DEFAULT_PORTS or not host:
        raise ConfigurationError(f"Invalid URL: {url}")

    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    query = ""
    if parts.query:
        params = parse_qsl(parts.query, keep_blank_values=True)
        query = urlencode(sorted(params, key=lambda kv: kv[0]))

    return urlunsplit((scheme, netloc, path, query, ""))


def url_hash(url: str) -> str:
    """First 8 hex chars of the SHA-1 of the normalized URL."""
    return hashlib.sha1(normalize_url(url).encode("utf-8")).hexdigest()[:8]


def generate_episode_id(hash_value: str, now: Optional[datetime] = None) -> str:
    """Episode id in the form `YYYYMMDD-HHMM-<hash>` (UTC)."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return f"{moment.strftime('%Y%m%d-%H%M')}-{hash_value}"

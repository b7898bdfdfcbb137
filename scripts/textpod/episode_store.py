#!/usr/bin/env python3
from __future__ import annotations

"""SQLite-backed record of each episode's identity and per-stage state."""

import json
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError
from .identity import generate_episode_id, normalize_url, url_hash
from .stages import (
    STAGE_FIELDS,
    STAGE_ORDER,
    STATUS_PENDING,
    STATUSES,
    error_column,
    status_column,
    validate_stage,
)

INTEGER_COLUMNS = {
    "metadata_input_tokens",
    "metadata_output_tokens",
    "script_segment_count",
    "script_input_tokens",
    "script_output_tokens",
    "audio_chunk_count",
    "merged_audio_bytes",
}
REAL_COLUMNS = {
    "audio_total_duration_sec",
    "merged_audio_duration_sec",
}
JSON_COLUMNS = {
    "metadata_related_links",
    "audio_files",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _column_type(name: str) -> str:
    if name in INTEGER_COLUMNS:
        return "INTEGER"
    if name in REAL_COLUMNS:
        return "REAL"
    return "TEXT"


def _stage_columns() -> List[Tuple[str, str]]:
    columns: List[Tuple[str, str]] = []
    for stage in STAGE_ORDER:
        columns.append((status_column(stage), f"TEXT NOT NULL DEFAULT '{STATUS_PENDING}'"))
        columns.append((error_column(stage), "TEXT"))
        for name in STAGE_FIELDS[stage]:
            columns.append((name, _column_type(name)))
    return columns


def _create_table_sql() -> str:
    lines = [
        "episode_id TEXT PRIMARY KEY",
        "url TEXT NOT NULL",
        "normalized_url TEXT NOT NULL",
        "url_hash TEXT NOT NULL UNIQUE",
        "created_at TEXT NOT NULL",
        "updated_at TEXT NOT NULL",
    ]
    lines.extend(f"{name} {decl}" for name, decl in _stage_columns())
    return "CREATE TABLE IF NOT EXISTS episodes (\n  " + ",\n  ".join(lines) + "\n)"


def _encode(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in JSON_COLUMNS:
        return json.dumps(list(value), ensure_ascii=False)
    if name in INTEGER_COLUMNS:
        return int(value)
    if name in REAL_COLUMNS:
        return float(value)
    return str(value)


def _decode(name: str, value: Any) -> Any:
    if value is None or name not in JSON_COLUMNS:
        return value
    try:
        decoded = json.loads(value)
    except ValueError:
        return []
    return decoded if isinstance(decoded, list) else []


@dataclass
class EpisodeRecord:
    """Snapshot of one `episodes` row."""

    episode_id: str
    url: str
    normalized_url: str
    url_hash: str
    created_at: str
    updated_at: str
    statuses: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, Optional[str]] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_row(row: sqlite3.Row) -> "EpisodeRecord":
        keys = set(row.keys())
        statuses = {stage: row[status_column(stage)] for stage in STAGE_ORDER}
        errors = {stage: row[error_column(stage)] for stage in STAGE_ORDER}
        values: Dict[str, Any] = {}
        for stage in STAGE_ORDER:
            for name in STAGE_FIELDS[stage]:
                values[name] = _decode(name, row[name]) if name in keys else None
        return EpisodeRecord(
            episode_id=row["episode_id"],
            url=row["url"],
            normalized_url=row["normalized_url"],
            url_hash=row["url_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            statuses=statuses,
            errors=errors,
            fields=values,
        )

    def status(self, stage: str) -> str:
        return self.statuses.get(validate_stage(stage), STATUS_PENDING)

    def error(self, stage: str) -> Optional[str]:
        return self.errors.get(validate_stage(stage))

    def get(self, name: str, default: Any = None) -> Any:
        value = self.fields.get(name)
        return default if value is None else value


class EpisodeStore:
    """One-table SQLite store; every stage update is a single transaction."""

    def __init__(self, database_path: str) -> None:
        self.database_path = database_path
        try:
            if database_path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(database_path)), exist_ok=True)
            self._conn = sqlite3.connect(database_path)
            self._conn.row_factory = sqlite3.Row
            self._init_table()
        except (OSError, sqlite3.Error) as exc:
            raise ConfigurationError(f"Cannot open episode database {database_path}: {exc}") from exc

    def _init_table(self) -> None:
        with self._conn:
            self._conn.execute(_create_table_sql())
            existing = {row["name"] for row in self._conn.execute("PRAGMA table_info(episodes)")}
            for name, decl in _stage_columns():
                if name not in existing:
                    self._conn.execute(f"ALTER TABLE episodes ADD COLUMN {name} {decl}")

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "EpisodeStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _fetch_one(self, sql: str, params: Iterable[Any]) -> Optional[EpisodeRecord]:
        row = self._conn.execute(sql, tuple(params)).fetchone()
        return EpisodeRecord.from_row(row) if row is not None else None

    def find_by_url_hash(self, hash_value: str) -> Optional[EpisodeRecord]:
        return self._fetch_one("SELECT * FROM episodes WHERE url_hash = ?", (hash_value,))

    def find_by_episode_id(self, episode_id: str) -> Optional[EpisodeRecord]:
        return self._fetch_one("SELECT * FROM episodes WHERE episode_id = ?", (episode_id,))

    def get(self, episode_id: str) -> EpisodeRecord:
        record = self.find_by_episode_id(episode_id)
        if record is None:
            raise KeyError(f"Unknown episode: {episode_id}")
        return record

    def create_episode(
        self,
        *,
        episode_id: str,
        url: str,
        normalized_url: str,
        url_hash: str,
    ) -> EpisodeRecord:
        """Insert a new row with every stage pending."""
        now = _utc_now_iso()
        with self._conn:
            self._conn.execute(
                "INSERT INTO episodes (episode_id, url, normalized_url, url_hash, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (episode_id, url, normalized_url, url_hash, now, now),
            )
        return self.get(episode_id)

    def find_or_create(self, url: str, *, now: Optional[datetime] = None) -> Tuple[EpisodeRecord, bool]:
        """Return the episode for `url`, creating it when unseen.

        The second element tells whether a new row was inserted.
        """
        normalized = normalize_url(url)
        hash_value = url_hash(url)
        existing = self.find_by_url_hash(hash_value)
        if existing is not None:
            return existing, False
        record = self.create_episode(
            episode_id=generate_episode_id(hash_value, now),
            url=url,
            normalized_url=normalized,
            url_hash=hash_value,
        )
        return record, True

    def update_stage(
        self,
        episode_id: str,
        stage: str,
        status: str,
        fields: Optional[Dict[str, Any]] = None,
        *,
        error: Optional[str] = None,
    ) -> EpisodeRecord:
        """Write status, error, `updated_at` and result fields in one transaction."""
        stage = validate_stage(stage)
        if status not in STATUSES:
            raise ValueError(f"Unknown status {status!r}")
        fields = dict(fields or {})
        owned = set(STAGE_FIELDS[stage])
        foreign = sorted(name for name in fields if name not in owned)
        if foreign:
            raise ValueError(f"Stage {stage} does not own column(s): {', '.join(foreign)}")

        assignments = [f"{status_column(stage)} = ?", f"{error_column(stage)} = ?", "updated_at = ?"]
        values: List[Any] = [status, error, _utc_now_iso()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            values.append(_encode(name, value))
        values.append(episode_id)
        with self._conn:
            cur = self._conn.execute(
                f"UPDATE episodes SET {', '.join(assignments)} WHERE episode_id = ?",
                values,
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown episode: {episode_id}")
        return self.get(episode_id)

    def reset_stages(self, episode_id: str, stages: Iterable[str]) -> EpisodeRecord:
        """Set the given stages back to pending and clear their outputs."""
        assignments: List[str] = []
        values: List[Any] = []
        for stage in stages:
            stage = validate_stage(stage)
            assignments.append(f"{status_column(stage)} = ?")
            values.append(STATUS_PENDING)
            assignments.append(f"{error_column(stage)} = NULL")
            assignments.extend(f"{name} = NULL" for name in STAGE_FIELDS[stage])
        if not assignments:
            return self.get(episode_id)
        assignments.append("updated_at = ?")
        values.append(_utc_now_iso())
        values.append(episode_id)
        with self._conn:
            cur = self._conn.execute(
                f"UPDATE episodes SET {', '.join(assignments)} WHERE episode_id = ?",
                values,
            )
            if cur.rowcount == 0:
                raise KeyError(f"Unknown episode: {episode_id}")
        return self.get(episode_id)

    def reset(self, episode_id: str) -> EpisodeRecord:
        """Full reset: identifier, URL fields and `created_at` survive."""
        return self.reset_stages(episode_id, STAGE_ORDER)

    def list_episodes(self) -> List[EpisodeRecord]:
        rows = self._conn.execute("SELECT * FROM episodes ORDER BY created_at, episode_id").fetchall()
        return [EpisodeRecord.from_row(row) for row in rows]

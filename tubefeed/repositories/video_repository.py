from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, cast

from tubefeed.repositories.common import (
    format_stored_timestamp,
    parse_stored_timestamp,
    utc_now_iso,
)
from tubefeed.repositories.database import Database

THUMBNAIL_VARIANTS: tuple[str, ...] = ("default", "medium", "high")
ORDERABLE_FIELDS: frozenset[str] = frozenset({"published_at", "view_count", "like_count"})
_SELECT_COLUMNS = """
    video_id, title, description, channel_id, channel_title, published_at,
    duration, view_count, like_count, tags_json, thumbnails_json
"""


class PersistenceError(Exception):
    """A storage failure that is not a duplicate-key outcome."""


@dataclass(frozen=True)
class Thumbnail:
    url: str
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    title: str
    description: str
    channel_id: str
    channel_title: str
    published_at: datetime
    duration: str = ""
    view_count: int = 0
    like_count: int = 0
    tags: tuple[str, ...] = ()
    thumbnails: dict[str, Thumbnail] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertBatchResult:
    inserted: list[VideoRecord]
    duplicate_ids: list[str]


class VideoRepository:
    """
    Durable store of ingested videos keyed by `video_id`.

    Uniqueness of `video_id` is enforced atomically by the primary key, so
    concurrent writers (a second process, or an overlapping cycle) can never
    produce duplicate rows. `insert_batch` reports such collisions as
    duplicates instead of failing.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def find_max_by_field(self, field_name: str) -> VideoRecord | None:
        return self._find_extreme(field_name, descending=True)

    def find_min_by_field(self, field_name: str) -> VideoRecord | None:
        return self._find_extreme(field_name, descending=False)

    def existing_ids(self, candidate_ids: Iterable[str]) -> set[str]:
        unique_ids = sorted(set(candidate_ids))
        if not unique_ids:
            return set()

        found: set[str] = set()
        try:
            with self._db.connection() as conn:
                # Stay well below SQLite's bound-parameter limit.
                for index in range(0, len(unique_ids), 500):
                    chunk = unique_ids[index : index + 500]
                    placeholders = ", ".join("?" for _ in chunk)
                    rows = conn.execute(
                        f"SELECT video_id FROM videos WHERE video_id IN ({placeholders})",
                        chunk,
                    ).fetchall()
                    found.update(str(row["video_id"]) for row in rows)
        except sqlite3.Error as exc:
            raise PersistenceError(f"existing id lookup failed: {exc}") from exc
        return found

    def insert_batch(self, records: Iterable[VideoRecord]) -> InsertBatchResult:
        pending = list(records)
        if not pending:
            return InsertBatchResult(inserted=[], duplicate_ids=[])

        inserted: list[VideoRecord] = []
        duplicate_ids: list[str] = []
        created_at = utc_now_iso()
        try:
            with self._db.connection() as conn:
                for record in pending:
                    cursor = conn.execute(
                        """
                        INSERT INTO videos (
                            video_id, title, description, channel_id, channel_title,
                            published_at, duration, view_count, like_count, tags_json,
                            thumbnails_json, created_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(video_id) DO NOTHING
                        """,
                        (
                            record.video_id,
                            record.title,
                            record.description,
                            record.channel_id,
                            record.channel_title,
                            format_stored_timestamp(record.published_at),
                            record.duration,
                            record.view_count,
                            record.like_count,
                            json.dumps(list(record.tags), ensure_ascii=True),
                            _dump_thumbnails(record.thumbnails),
                            created_at,
                        ),
                    )
                    if cursor.rowcount == 1:
                        inserted.append(record)
                    else:
                        duplicate_ids.append(record.video_id)
        except sqlite3.Error as exc:
            raise PersistenceError(f"video batch insert failed: {exc}") from exc

        return InsertBatchResult(inserted=inserted, duplicate_ids=duplicate_ids)

    def count_all(self) -> int:
        try:
            with self._db.connection() as conn:
                row = conn.execute("SELECT COUNT(*) AS total FROM videos").fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"video count failed: {exc}") from exc
        return int(row["total"]) if row is not None else 0

    def get(self, video_id: str) -> VideoRecord | None:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM videos WHERE video_id = ?",
                    (video_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"video lookup failed: {exc}") from exc
        if row is None:
            return None
        return _row_to_record(row)

    def _find_extreme(self, field_name: str, *, descending: bool) -> VideoRecord | None:
        if field_name not in ORDERABLE_FIELDS:
            raise ValueError(f"Unsupported order field: {field_name}")

        direction = "DESC" if descending else "ASC"
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_SELECT_COLUMNS}
                    FROM videos
                    ORDER BY {field_name} {direction}, video_id ASC
                    LIMIT 1
                    """
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"video {field_name} lookup failed: {exc}") from exc
        if row is None:
            return None
        return _row_to_record(row)


def _row_to_record(row: sqlite3.Row) -> VideoRecord:
    return VideoRecord(
        video_id=str(row["video_id"]),
        title=str(row["title"]),
        description=str(row["description"]),
        channel_id=str(row["channel_id"]),
        channel_title=str(row["channel_title"]),
        published_at=parse_stored_timestamp(str(row["published_at"])),
        duration=str(row["duration"]),
        view_count=int(row["view_count"]),
        like_count=int(row["like_count"]),
        tags=_load_tags(row["tags_json"]),
        thumbnails=_load_thumbnails(row["thumbnails_json"]),
    )


def _dump_thumbnails(thumbnails: dict[str, Thumbnail]) -> str:
    payload: dict[str, dict[str, Any]] = {}
    for variant in THUMBNAIL_VARIANTS:
        thumbnail = thumbnails.get(variant)
        if thumbnail is None:
            continue
        payload[variant] = {
            "url": thumbnail.url,
            "width": thumbnail.width,
            "height": thumbnail.height,
        }
    return json.dumps(payload, sort_keys=True, ensure_ascii=True)


def _load_tags(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, str):
        return ()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(item for item in cast(list[object], parsed) if isinstance(item, str))


def _load_thumbnails(raw: object) -> dict[str, Thumbnail]:
    if not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}

    thumbnails: dict[str, Thumbnail] = {}
    for variant, payload in cast(dict[str, object], parsed).items():
        if not isinstance(payload, dict):
            continue
        payload_dict = cast(dict[str, object], payload)
        url = payload_dict.get("url")
        if not isinstance(url, str):
            continue
        width = payload_dict.get("width")
        height = payload_dict.get("height")
        thumbnails[variant] = Thumbnail(
            url=url,
            width=width if isinstance(width, int) else None,
            height=height if isinstance(height, int) else None,
        )
    return thumbnails

from __future__ import annotations

from datetime import UTC, datetime

# Fixed width so lexical ordering of stored text matches chronological ordering.
STORED_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_stored_timestamp(value: datetime) -> str:
    return to_utc(value).strftime(STORED_TIMESTAMP_FORMAT)


def parse_stored_timestamp(raw_value: str) -> datetime:
    return datetime.strptime(raw_value, STORED_TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def parse_rfc3339(raw_value: str) -> datetime:
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    return to_utc(datetime.fromisoformat(normalized))


def format_rfc3339(value: datetime) -> str:
    return to_utc(value).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")

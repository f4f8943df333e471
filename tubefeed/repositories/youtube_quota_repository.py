from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from tubefeed.repositories.common import format_stored_timestamp
from tubefeed.repositories.database import Database


@dataclass(frozen=True)
class QuotaUsage:
    day: date
    units: int = 0
    calls: int = 0
    units_by_operation: Mapping[str, int] = field(default_factory=dict)

    def reached(self, threshold: int) -> bool:
        return threshold > 0 and self.units >= threshold


class YouTubeQuotaRepository:
    """
    Ledger of estimated YouTube Data API units, one row per UTC day and operation.

    Units are charged by the caller from the documented per-method cost; the
    API never reports what a request actually consumed. Totals span every key.
    """

    def __init__(self, db: Database, *, clock: Callable[[], datetime] | None = None) -> None:
        self._db = db
        self._clock = clock or (lambda: datetime.now(UTC))

    def today(self) -> date:
        return self._clock().astimezone(UTC).date()

    def charge(self, operation: str, units: int) -> QuotaUsage:
        """Add `units` to today's row for `operation` and return today's totals."""
        day = self.today()
        if units > 0:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO youtube_quota_usage (day, operation, units, calls, last_charged_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(day, operation) DO UPDATE SET
                        units = units + excluded.units,
                        calls = calls + 1,
                        last_charged_at = excluded.last_charged_at
                    """,
                    (day.isoformat(), operation, units, format_stored_timestamp(self._clock())),
                )
        return self.usage(day)

    def usage(self, day: date | None = None) -> QuotaUsage:
        target = day or self.today()
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT operation, units, calls FROM youtube_quota_usage WHERE day = ?",
                (target.isoformat(),),
            ).fetchall()
        return QuotaUsage(
            day=target,
            units=sum(int(row["units"]) for row in rows),
            calls=sum(int(row["calls"]) for row in rows),
            units_by_operation={str(row["operation"]): int(row["units"]) for row in rows},
        )

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from tubefeed.repositories.video_repository import Thumbnail, VideoRecord, VideoRepository
from tubefeed.services.youtube_client import (
    MAX_RESULTS_CEILING,
    QuotaExhaustedError,
    SearchItem,
    UpstreamError,
    VideoDetails,
    YouTubeClient,
)
from tubefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubefeed.ingest")

DEFAULT_OVERLAP_SECONDS = 120
DEFAULT_COLD_START_LOOKBACK_SECONDS = 3600
OUTCOME_OK = "ok"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class IngestionCycleResult:
    published_after: datetime | None = None
    candidates: int = 0
    existing: int = 0
    new_ids: tuple[str, ...] = ()
    missing_details: tuple[str, ...] = ()
    inserted: int = 0
    duplicates: int = 0
    outcome: str = OUTCOME_OK
    error_type: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class IngestionStats:
    total_videos: int
    latest_published_at: datetime | None
    oldest_published_at: datetime | None
    search_query: str


class IngestionService:
    """
    Incremental ingestion of search results into the video repository.

    A cycle runs strictly in order: compute the fetch window from the newest
    stored video, search, drop ids already stored, hydrate the rest with
    details, insert. The window overlaps the previous one by
    `overlap_seconds`; the existing-id filter and the repository's unique key
    keep repeated cycles free of duplicates.
    """

    def __init__(
        self,
        repository: VideoRepository,
        client: YouTubeClient,
        *,
        search_query: str,
        max_results: int = MAX_RESULTS_CEILING,
        overlap_seconds: int = DEFAULT_OVERLAP_SECONDS,
        cold_start_lookback_seconds: int = DEFAULT_COLD_START_LOOKBACK_SECONDS,
        clock: Callable[[], datetime] | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        normalized_query = search_query.strip()
        if not normalized_query:
            raise ValueError("search_query must not be empty")
        self._repository = repository
        self._client = client
        self._search_query = normalized_query
        self._max_results = max(1, min(MAX_RESULTS_CEILING, max_results))
        self._overlap = timedelta(seconds=max(0, overlap_seconds))
        self._cold_start_lookback = timedelta(seconds=max(1, cold_start_lookback_seconds))
        self._clock = clock or _utc_now
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def search_query(self) -> str:
        return self._search_query

    def compute_published_after(self) -> datetime:
        latest = self._repository.find_max_by_field("published_at")
        if latest is None:
            return self._clock() - self._cold_start_lookback
        return latest.published_at - self._overlap

    def run_cycle(self) -> IngestionCycleResult:
        started_at = time.perf_counter()
        published_after = self.compute_published_after()
        LOGGER.info(
            "ingest cycle start query=%s published_after=%s",
            self._search_query,
            published_after.isoformat(),
        )

        candidates = self._client.search(
            self._search_query,
            published_after,
            max_results=self._max_results,
        )
        if not candidates:
            LOGGER.info("ingest cycle found no candidates")
            return IngestionCycleResult(
                published_after=published_after,
                duration_ms=_elapsed_ms(started_at),
            )

        candidate_ids = list(dict.fromkeys(item.video_id for item in candidates))
        existing_ids = self._repository.existing_ids(candidate_ids)
        new_ids = [video_id for video_id in candidate_ids if video_id not in existing_ids]
        if not new_ids:
            LOGGER.info(
                "ingest cycle found only stored videos candidates=%s",
                len(candidate_ids),
            )
            return IngestionCycleResult(
                published_after=published_after,
                candidates=len(candidate_ids),
                existing=len(existing_ids),
                duration_ms=_elapsed_ms(started_at),
            )

        details_by_id = {details.video_id: details for details in self._client.details(new_ids)}

        records: list[VideoRecord] = []
        missing_details: list[str] = []
        pending_ids = set(new_ids)
        for item in candidates:
            if item.video_id not in pending_ids:
                continue
            pending_ids.discard(item.video_id)
            details = details_by_id.get(item.video_id)
            if details is None:
                LOGGER.info("ingest skipping video without details video_id=%s", item.video_id)
                missing_details.append(item.video_id)
                continue
            records.append(build_video_record(item, details))

        batch = self._repository.insert_batch(records)
        if batch.duplicate_ids:
            LOGGER.info(
                "ingest insert skipped already stored videos count=%s",
                len(batch.duplicate_ids),
            )

        result = IngestionCycleResult(
            published_after=published_after,
            candidates=len(candidate_ids),
            existing=len(existing_ids),
            new_ids=tuple(new_ids),
            missing_details=tuple(missing_details),
            inserted=len(batch.inserted),
            duplicates=len(batch.duplicate_ids),
            duration_ms=_elapsed_ms(started_at),
        )
        LOGGER.info(
            "ingest cycle finished candidates=%s existing=%s inserted=%s duplicates=%s "
            "missing_details=%s duration_ms=%s",
            result.candidates,
            result.existing,
            result.inserted,
            result.duplicates,
            len(result.missing_details),
            result.duration_ms,
        )
        return result

    def run_background_cycle(self) -> IngestionCycleResult:
        started_at = time.perf_counter()
        self._telemetry.emit("ingest.cycle.start", query=self._search_query)
        try:
            result = self.run_cycle()
        except QuotaExhaustedError as exc:
            LOGGER.error(
                "ingest cycle failed error_type=%s attempts=%s status_code=%s reason=%s",
                type(exc).__name__,
                exc.attempts,
                exc.status_code,
                exc.reason,
            )
            return self._failed_result(exc, started_at)
        except UpstreamError as exc:
            LOGGER.error(
                "ingest cycle failed error_type=%s status_code=%s reason=%s",
                type(exc).__name__,
                exc.status_code,
                exc.reason,
                exc_info=True,
            )
            return self._failed_result(exc, started_at)
        except Exception as exc:
            LOGGER.error(
                "ingest cycle failed error_type=%s",
                type(exc).__name__,
                exc_info=True,
            )
            return self._failed_result(exc, started_at)

        self._telemetry.emit(
            "ingest.cycle.finish",
            published_after=result.published_after,
            candidates=result.candidates,
            inserted=result.inserted,
            duplicates=result.duplicates,
            missing_details=len(result.missing_details),
            duration_ms=result.duration_ms,
            outcome=OUTCOME_OK,
        )
        return result

    def get_stats(self) -> IngestionStats:
        latest = self._repository.find_max_by_field("published_at")
        oldest = self._repository.find_min_by_field("published_at")
        return IngestionStats(
            total_videos=self._repository.count_all(),
            latest_published_at=latest.published_at if latest is not None else None,
            oldest_published_at=oldest.published_at if oldest is not None else None,
            search_query=self._search_query,
        )

    def _failed_result(self, exc: Exception, started_at: float) -> IngestionCycleResult:
        duration_ms = _elapsed_ms(started_at)
        self._telemetry.emit(
            "ingest.cycle.error",
            error_type=type(exc).__name__,
            status_code=getattr(exc, "status_code", None),
            duration_ms=duration_ms,
        )
        return IngestionCycleResult(
            outcome=OUTCOME_FAILED,
            error_type=type(exc).__name__,
            duration_ms=duration_ms,
        )


def build_video_record(item: SearchItem, details: VideoDetails) -> VideoRecord:
    return VideoRecord(
        video_id=item.video_id,
        title=item.title,
        description=item.description,
        channel_id=item.channel_id,
        channel_title=item.channel_title,
        published_at=item.published_at,
        duration=details.duration,
        view_count=details.view_count,
        like_count=details.like_count,
        tags=details.tags,
        thumbnails={
            variant: Thumbnail(url=thumb.url, width=thumb.width, height=thumb.height)
            for variant, thumb in item.thumbnails.items()
        },
    )


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def stats_to_dict(stats: IngestionStats) -> dict[str, object]:
    return {
        "total_videos": stats.total_videos,
        "latest_published_at": (
            stats.latest_published_at.isoformat() if stats.latest_published_at else None
        ),
        "oldest_published_at": (
            stats.oldest_published_at.isoformat() if stats.oldest_published_at else None
        ),
        "search_query": stats.search_query,
    }

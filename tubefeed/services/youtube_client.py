from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar, cast

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from tubefeed.repositories.common import format_rfc3339, parse_rfc3339
from tubefeed.repositories.youtube_quota_repository import YouTubeQuotaRepository
from tubefeed.services.credential_pool import CredentialPool
from tubefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubefeed.youtube")

MAX_RESULTS_CEILING = 50
DETAILS_BATCH_SIZE = 50
QUOTA_EXCEEDED_STATUS = 403
QUOTA_EXCEEDED_REASONS: frozenset[str] = frozenset({"quotaExceeded", "dailyLimitExceeded"})
# Estimated YouTube Data API v3 costs.
SEARCH_LIST_UNITS = 100
VIDEOS_LIST_UNITS = 1

T = TypeVar("T")
ClientFactory = Callable[[str], Any]


class UpstreamError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


class QuotaExhaustedError(UpstreamError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message, status_code=QUOTA_EXCEEDED_STATUS, reason="quotaExceeded")
        self.attempts = attempts


@dataclass(frozen=True)
class SearchThumbnail:
    url: str
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class SearchItem:
    video_id: str
    title: str
    description: str
    channel_id: str
    channel_title: str
    published_at: datetime
    thumbnails: dict[str, SearchThumbnail] = field(default_factory=dict)


@dataclass(frozen=True)
class VideoDetails:
    video_id: str
    duration: str = ""
    view_count: int = 0
    like_count: int = 0
    tags: tuple[str, ...] = ()


class YouTubeClient:
    """
    YouTube Data API v3 client authenticated with rotating API keys.

    A quota-exceeded answer rotates to the next key and replays the same
    request, at most once per key. Every other failure surfaces immediately
    as `UpstreamError`; retrying those is left to the next scheduled cycle.
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        timeout_seconds: float = 10.0,
        client_factory: ClientFactory | None = None,
        quota_repository: YouTubeQuotaRepository | None = None,
        daily_quota_limit: int = 10_000,
        quota_warning_percent: float = 0.8,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._pool = pool
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._client_factory = client_factory or self._build_default_client
        self._quota_repository = quota_repository
        self._daily_quota_limit = max(0, daily_quota_limit)
        self._quota_warning_threshold = int(self._daily_quota_limit * quota_warning_percent)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._clients: dict[str, Any] = {}
        self._quota_warned_on: date | None = None

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    def search(
        self,
        query: str,
        published_after: datetime,
        max_results: int = MAX_RESULTS_CEILING,
    ) -> list[SearchItem]:
        """Videos matching `query` published after `published_after`, newest first."""
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("search query must not be empty")
        page_size = max(1, min(MAX_RESULTS_CEILING, max_results))

        def _request(client: Any) -> dict[str, Any]:
            return cast(
                dict[str, Any],
                client.search()
                .list(
                    part="snippet",
                    type="video",
                    q=normalized_query,
                    order="date",
                    maxResults=page_size,
                    publishedAfter=format_rfc3339(published_after),
                )
                .execute(),
            )

        response = self._execute_with_rotation("search.list", _request)
        self._record_quota("search.list", SEARCH_LIST_UNITS)

        items: list[SearchItem] = []
        for raw_item in _as_list(response.get("items")):
            item = _parse_search_item(_as_dict(raw_item))
            if item is not None:
                items.append(item)
        LOGGER.info(
            "youtube search finished query=%s published_after=%s items=%s",
            normalized_query,
            format_rfc3339(published_after),
            len(items),
        )
        return items

    def details(self, video_ids: Iterable[str]) -> list[VideoDetails]:
        unique_ids = list(dict.fromkeys(video_id for video_id in video_ids if video_id))
        if not unique_ids:
            return []

        results: list[VideoDetails] = []
        for index in range(0, len(unique_ids), DETAILS_BATCH_SIZE):
            chunk = unique_ids[index : index + DETAILS_BATCH_SIZE]

            def _request(client: Any, chunk: list[str] = chunk) -> dict[str, Any]:
                return cast(
                    dict[str, Any],
                    client.videos()
                    .list(
                        part="snippet,contentDetails,statistics",
                        id=",".join(chunk),
                        maxResults=len(chunk),
                    )
                    .execute(),
                )

            response = self._execute_with_rotation("videos.list", _request)
            self._record_quota("videos.list", VIDEOS_LIST_UNITS)
            for raw_item in _as_list(response.get("items")):
                details = _parse_video_details(_as_dict(raw_item))
                if details is not None:
                    results.append(details)
        return results

    def _execute_with_rotation(self, operation: str, request: Callable[[Any], T]) -> T:
        pool_size = self._pool.size
        for attempt in range(1, pool_size + 1):
            try:
                return request(self._client_for(self._pool.current()))
            except HttpError as exc:
                status_code = _http_error_status(exc)
                reason = _http_error_reason(exc)
                if not _is_quota_exceeded_error(exc):
                    raise UpstreamError(
                        f"YouTube {operation} failed: status={status_code} reason={reason}",
                        status_code=status_code,
                        reason=reason,
                    ) from exc
                if attempt >= pool_size:
                    raise QuotaExhaustedError(
                        f"All {pool_size} YouTube API key(s) have exceeded their quota",
                        attempts=attempt,
                    ) from exc
                LOGGER.warning(
                    "youtube quota exceeded; rotating key operation=%s attempt=%s pool_index=%s",
                    operation,
                    attempt,
                    self._pool.index,
                )
                self._telemetry.emit(
                    "youtube.request.quota_rotate",
                    operation=operation,
                    attempt=attempt,
                    pool_index=self._pool.index,
                )
                self._pool.rotate()
            except (httplib2.HttpLib2Error, OSError) as exc:
                raise UpstreamError(
                    f"YouTube {operation} request failed: {type(exc).__name__}: {exc}"
                ) from exc
        raise QuotaExhaustedError("YouTube credential pool is empty", attempts=0)

    def _client_for(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    def _build_default_client(self, api_key: str) -> Any:
        return build(
            "youtube",
            "v3",
            developerKey=api_key,
            http=httplib2.Http(timeout=self._timeout_seconds),
            cache_discovery=False,
        )

    def _record_quota(self, operation: str, units: int) -> None:
        if self._quota_repository is None:
            return
        usage = self._quota_repository.charge(operation, units)
        # Warn once per UTC day.
        if usage.reached(self._quota_warning_threshold) and self._quota_warned_on != usage.day:
            self._quota_warned_on = usage.day
            LOGGER.warning(
                "youtube quota usage high units_today=%s daily_limit=%s calls_today=%s",
                usage.units,
                self._daily_quota_limit,
                usage.calls,
            )


def _is_quota_exceeded_error(exc: HttpError) -> bool:
    # 403 is shared with other failures (forbidden, disabled API); only the
    # structured reason tells them apart.
    if _http_error_status(exc) != QUOTA_EXCEEDED_STATUS:
        return False
    return any(reason in QUOTA_EXCEEDED_REASONS for reason in _http_error_reasons(exc))


def _http_error_status(exc: HttpError) -> int | None:
    raw_status = getattr(exc.resp, "status", None)
    try:
        return int(raw_status) if raw_status is not None else None
    except (TypeError, ValueError):
        return None


def _http_error_payload(exc: HttpError) -> dict[str, Any]:
    content = exc.content
    raw_body = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else ""
    if not raw_body.strip():
        return {}
    try:
        return _as_dict(json.loads(raw_body))
    except json.JSONDecodeError:
        return {}


def _http_error_reasons(exc: HttpError) -> list[str]:
    error = _as_dict(_http_error_payload(exc).get("error"))
    reasons: list[str] = []
    for raw_entry in _as_list(error.get("errors")):
        reason = _as_dict(raw_entry).get("reason")
        if isinstance(reason, str):
            reasons.append(reason)
    return reasons


def _http_error_reason(exc: HttpError) -> str | None:
    reasons = _http_error_reasons(exc)
    if reasons:
        return reasons[0]
    message = _as_dict(_http_error_payload(exc).get("error")).get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def _parse_search_item(item: dict[str, Any]) -> SearchItem | None:
    video_id = _as_dict(item.get("id")).get("videoId")
    if not isinstance(video_id, str) or not video_id.strip():
        return None
    snippet = _as_dict(item.get("snippet"))
    raw_published_at = snippet.get("publishedAt")
    if not isinstance(raw_published_at, str):
        LOGGER.warning("youtube search item without publishedAt video_id=%s", video_id)
        return None
    try:
        published_at = parse_rfc3339(raw_published_at)
    except ValueError:
        LOGGER.warning(
            "youtube search item with invalid publishedAt video_id=%s value=%s",
            video_id,
            raw_published_at,
        )
        return None

    return SearchItem(
        video_id=video_id,
        title=_as_text(snippet.get("title")),
        description=_as_text(snippet.get("description")),
        channel_id=_as_text(snippet.get("channelId")),
        channel_title=_as_text(snippet.get("channelTitle")),
        published_at=published_at,
        thumbnails=_extract_thumbnails(snippet),
    )


def _parse_video_details(item: dict[str, Any]) -> VideoDetails | None:
    video_id = item.get("id")
    if not isinstance(video_id, str) or not video_id:
        return None
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    statistics = _as_dict(item.get("statistics"))

    tags: list[str] = []
    for raw_tag in _as_list(snippet.get("tags")):
        if isinstance(raw_tag, str):
            tags.append(raw_tag)

    return VideoDetails(
        video_id=video_id,
        duration=_as_text(content_details.get("duration")),
        view_count=_coerce_int(statistics.get("viewCount")),
        like_count=_coerce_int(statistics.get("likeCount")),
        tags=tuple(tags),
    )


def _extract_thumbnails(snippet: dict[str, Any]) -> dict[str, SearchThumbnail]:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    extracted: dict[str, SearchThumbnail] = {}
    for variant in ("default", "medium", "high"):
        payload = _as_dict(thumbnails.get(variant))
        url = payload.get("url")
        if not isinstance(url, str) or not url.strip():
            continue
        width = payload.get("width")
        height = payload.get("height")
        extracted[variant] = SearchThumbnail(
            url=url,
            width=width if isinstance(width, int) else None,
            height=height if isinstance(height, int) else None,
        )
    return extracted


def _as_text(raw_value: object) -> str:
    return raw_value if isinstance(raw_value, str) else ""


def _coerce_int(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return 0
    return 0


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []

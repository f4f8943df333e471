from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httplib2
import pytest
from googleapiclient.errors import HttpError

from tubefeed.repositories.database import Database
from tubefeed.repositories.video_repository import VideoRepository


@dataclass(frozen=True)
class FakeCall:
    operation: str
    api_key: str
    params: dict[str, Any]


class _FakeRequest:
    def __init__(self, handler: Callable[[], dict[str, Any]]) -> None:
        self._handler = handler

    def execute(self) -> dict[str, Any]:
        return self._handler()


class _FakeCollection:
    def __init__(self, upstream: FakeUpstream, api_key: str, operation: str) -> None:
        self._upstream = upstream
        self._api_key = api_key
        self._operation = operation

    def list(self, **params: Any) -> _FakeRequest:
        return _FakeRequest(
            lambda: self._upstream.handle(self._operation, self._api_key, params)
        )


class _FakeYouTubeResource:
    def __init__(self, upstream: FakeUpstream, api_key: str) -> None:
        self._upstream = upstream
        self._api_key = api_key

    def search(self) -> _FakeCollection:
        return _FakeCollection(self._upstream, self._api_key, "search.list")

    def videos(self) -> _FakeCollection:
        return _FakeCollection(self._upstream, self._api_key, "videos.list")


class FakeUpstream:
    """In-memory stand-in for the YouTube Data API discovery client."""

    def __init__(self) -> None:
        self.search_items: list[dict[str, Any]] = []
        self.video_items: dict[str, dict[str, Any]] = {}
        # (operation, api_key) -> exception; api_key "*" matches every key.
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[FakeCall] = []
        self.built_keys: list[str] = []

    def client_factory(self, api_key: str) -> _FakeYouTubeResource:
        self.built_keys.append(api_key)
        return _FakeYouTubeResource(self, api_key)

    def handle(self, operation: str, api_key: str, params: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(FakeCall(operation=operation, api_key=api_key, params=dict(params)))
        failure = self.failures.get((operation, api_key)) or self.failures.get((operation, "*"))
        if failure is not None:
            raise failure
        if operation == "search.list":
            return {"kind": "youtube#searchListResponse", "items": list(self.search_items)}
        requested = str(params["id"]).split(",")
        return {
            "kind": "youtube#videoListResponse",
            "items": [self.video_items[video_id] for video_id in requested if video_id in self.video_items],
        }

    @staticmethod
    def quota_exceeded() -> HttpError:
        return quota_exceeded_error()

    @staticmethod
    def http_error(status: int, reason: str, *, message: str = "error") -> HttpError:
        return http_error(status, reason, message=message)

    def calls_for(self, operation: str) -> list[FakeCall]:
        return [call for call in self.calls if call.operation == operation]

    def add_video(
        self,
        video_id: str,
        published_at: datetime,
        *,
        title: str | None = None,
        with_details: bool = True,
        view_count: str | None = "10",
        like_count: str | None = "2",
        tags: list[str] | None = None,
    ) -> None:
        self.search_items.append(
            search_item_payload(video_id, published_at, title=title or f"Video {video_id}")
        )
        if with_details:
            self.video_items[video_id] = video_payload(
                video_id,
                view_count=view_count,
                like_count=like_count,
                tags=tags,
            )


def search_item_payload(
    video_id: str,
    published_at: datetime,
    *,
    title: str = "Official video",
) -> dict[str, Any]:
    return {
        "kind": "youtube#searchResult",
        "id": {"kind": "youtube#video", "videoId": video_id},
        "snippet": {
            "publishedAt": published_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "channelId": f"UC_{video_id}",
            "title": title,
            "description": f"Description for {video_id}",
            "channelTitle": f"Channel {video_id}",
            "thumbnails": {
                "default": {
                    "url": f"https://i.ytimg.com/vi/{video_id}/default.jpg",
                    "width": 120,
                    "height": 90,
                },
                "medium": {
                    "url": f"https://i.ytimg.com/vi/{video_id}/mqdefault.jpg",
                    "width": 320,
                    "height": 180,
                },
                "high": {
                    "url": f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
                    "width": 480,
                    "height": 360,
                },
            },
        },
    }


def video_payload(
    video_id: str,
    *,
    duration: str = "PT4M13S",
    view_count: str | None = "10",
    like_count: str | None = "2",
    tags: list[str] | None = None,
) -> dict[str, Any]:
    statistics: dict[str, str] = {}
    if view_count is not None:
        statistics["viewCount"] = view_count
    if like_count is not None:
        statistics["likeCount"] = like_count
    snippet: dict[str, Any] = {"title": f"Video {video_id}"}
    if tags is not None:
        snippet["tags"] = tags
    return {
        "kind": "youtube#video",
        "id": video_id,
        "snippet": snippet,
        "contentDetails": {"duration": duration},
        "statistics": statistics,
    }


def http_error(status: int, reason: str, *, message: str = "error") -> HttpError:
    body = {
        "error": {
            "code": status,
            "message": message,
            "errors": [{"message": message, "domain": "youtube.quota", "reason": reason}],
        }
    }
    return HttpError(
        httplib2.Response({"status": str(status), "reason": "Forbidden"}),
        json.dumps(body).encode("utf-8"),
    )


def quota_exceeded_error() -> HttpError:
    return http_error(
        403,
        "quotaExceeded",
        message="The request cannot be completed because you have exceeded your quota.",
    )


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "videos.db")
    db.initialize()
    return db


@pytest.fixture
def video_repository(database: Database) -> VideoRepository:
    return VideoRepository(database)


@pytest.fixture(autouse=True)
def _restore_tubefeed_logger() -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    # The app lifespan installs its own handlers and stops propagation.
    yield
    logger = logging.getLogger("tubefeed")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    telemetry_logger = logging.getLogger("tubefeed.telemetry")
    for handler in list(telemetry_logger.handlers):
        telemetry_logger.removeHandler(handler)
        handler.close()
    telemetry_logger.propagate = True

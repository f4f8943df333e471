from __future__ import annotations

from functools import lru_cache

from tubefeed.config import AppSettings, load_settings
from tubefeed.repositories.database import Database
from tubefeed.repositories.video_repository import VideoRepository
from tubefeed.repositories.youtube_quota_repository import YouTubeQuotaRepository
from tubefeed.services.credential_pool import CredentialPool
from tubefeed.services.ingestion_service import IngestionService
from tubefeed.services.youtube_client import YouTubeClient
from tubefeed.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_video_repository() -> VideoRepository:
    return VideoRepository(get_database())


@lru_cache(maxsize=1)
def get_ingestion_service() -> IngestionService:
    settings = get_settings()
    telemetry = get_telemetry()
    client = YouTubeClient(
        CredentialPool(settings.youtube_api_keys),
        timeout_seconds=settings.youtube_http_timeout_seconds,
        quota_repository=YouTubeQuotaRepository(get_database()),
        daily_quota_limit=settings.youtube_daily_quota_limit * len(settings.youtube_api_keys),
        quota_warning_percent=settings.youtube_quota_warning_percent,
        telemetry=telemetry,
    )
    return IngestionService(
        get_video_repository(),
        client,
        search_query=settings.search_query,
        max_results=settings.youtube_max_results,
        overlap_seconds=settings.ingest_overlap_seconds,
        cold_start_lookback_seconds=settings.ingest_cold_start_lookback_seconds,
        telemetry=telemetry,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_ingestion_service.cache_clear()
    get_video_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()

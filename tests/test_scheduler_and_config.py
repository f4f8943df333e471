from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any, cast

import pytest

from tubefeed.config import ConfigurationError, load_settings
from tubefeed.services.ingestion_service import IngestionCycleResult
from tubefeed.services.scheduler_service import SchedulerService


class _FakeIngestionService:
    def __init__(self, *, block: bool = False, error: Exception | None = None) -> None:
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self._block = block
        self._error = error
        if not block:
            self.release.set()

    def run_background_cycle(self) -> IngestionCycleResult:
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        if self._error is not None:
            raise self._error
        return IngestionCycleResult(inserted=1)


def _scheduler(fake: _FakeIngestionService, interval_seconds: int = 60) -> SchedulerService:
    return SchedulerService(cast(Any, fake), interval_seconds)


@pytest.fixture(autouse=True)
def _isolated_environment(  # pyright: ignore[reportUnusedFunction]
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[None]:
    for name in list(os.environ):
        if name.startswith("TUBEFEED_"):
            monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the settings under test.
    monkeypatch.chdir(tmp_path)
    yield


def test_scheduler_first_tick_fires_immediately() -> None:
    fake = _FakeIngestionService()
    scheduler = _scheduler(fake, interval_seconds=60)

    scheduler.start()
    try:
        assert fake.started.wait(timeout=2)
    finally:
        scheduler.stop()

    assert fake.calls == 1


def test_scheduler_ticks_on_fixed_interval() -> None:
    fake = _FakeIngestionService()
    scheduler = _scheduler(fake, interval_seconds=1)

    scheduler.start()
    time.sleep(2.3)
    scheduler.stop()

    assert fake.calls >= 2


def test_tick_is_skipped_while_cycle_is_running() -> None:
    fake = _FakeIngestionService(block=True)
    scheduler = _scheduler(fake)

    assert scheduler.tick() is True
    assert fake.started.wait(timeout=2)

    assert scheduler.tick() is False
    assert scheduler.tick() is False
    assert scheduler.cycle_in_progress is True
    assert scheduler.skipped_ticks == 2
    assert fake.calls == 1

    fake.release.set()
    assert scheduler.wait_for_idle(timeout=2) is True
    assert scheduler.cycle_in_progress is False

    assert scheduler.tick() is True
    assert scheduler.wait_for_idle(timeout=2) is True
    assert fake.calls == 2


def test_flag_is_cleared_when_cycle_raises() -> None:
    fake = _FakeIngestionService(error=RuntimeError("boom"))
    scheduler = _scheduler(fake)

    assert scheduler.tick() is True
    assert scheduler.wait_for_idle(timeout=2) is True
    assert scheduler.cycle_in_progress is False

    assert scheduler.tick() is True
    assert scheduler.wait_for_idle(timeout=2) is True
    assert fake.calls == 2


def test_slow_cycle_causes_skipped_ticks_not_overlap() -> None:
    fake = _FakeIngestionService(block=True)
    scheduler = _scheduler(fake, interval_seconds=1)

    scheduler.start()
    time.sleep(2.3)
    assert fake.calls == 1
    assert scheduler.skipped_ticks >= 1

    fake.release.set()
    scheduler.stop()
    assert scheduler.cycle_in_progress is False


def test_ticker_keeps_running_when_a_tick_fails(caplog: pytest.LogCaptureFixture) -> None:
    fake = _FakeIngestionService()
    scheduler = _scheduler(fake, interval_seconds=1)
    attempts: list[int] = []
    original_tick = scheduler.tick

    def _flaky_tick() -> bool:
        attempts.append(len(attempts))
        if len(attempts) == 1:
            raise RuntimeError("can't start new thread")
        return original_tick()

    scheduler.tick = _flaky_tick  # type: ignore[method-assign]
    with caplog.at_level(logging.ERROR, logger="tubefeed.scheduler"):
        scheduler.start()
        time.sleep(1.4)
        scheduler.stop()

    assert len(attempts) >= 2
    assert fake.calls >= 1
    assert any("could not start a cycle" in record.getMessage() for record in caplog.records)


def test_load_settings_parses_keys_booleans_and_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("TUBEFEED_DATA_DIR", str(data_dir))
    monkeypatch.setenv("TUBEFEED_ENABLE_SCHEDULER", "false")
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", " key-a, ,key-b,key-c ")
    monkeypatch.setenv("TUBEFEED_FETCH_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("TUBEFEED_SEARCH_QUERY", "  live session ")
    monkeypatch.setenv("TUBEFEED_INGEST_OVERLAP_SECONDS", "300")
    monkeypatch.setenv("TUBEFEED_INGEST_COLD_START_LOOKBACK_SECONDS", "7200")
    monkeypatch.setenv("TUBEFEED_YOUTUBE_DAILY_QUOTA_LIMIT", "12000")
    monkeypatch.setenv("TUBEFEED_YOUTUBE_QUOTA_WARNING_PERCENT", "0.75")
    monkeypatch.setenv("TUBEFEED_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TUBEFEED_TELEMETRY_SINK", " NONE ")

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.db_path == (data_dir / "videos.db").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()
    assert settings.scheduler_enabled is False
    assert settings.youtube_api_keys == ["key-a", "key-b", "key-c"]
    assert settings.fetch_interval_seconds == 30
    assert settings.search_query == "live session"
    assert settings.ingest_overlap_seconds == 300
    assert settings.ingest_cold_start_lookback_seconds == 7200
    assert settings.youtube_daily_quota_limit == 12_000
    assert settings.youtube_quota_warning_percent == 0.75
    assert settings.log_level == "DEBUG"
    assert settings.telemetry_sink == "none"


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")

    settings = load_settings()

    assert settings.scheduler_enabled is True
    assert settings.fetch_interval_seconds == 10
    assert settings.search_query == "official"
    assert settings.ingest_overlap_seconds == 120
    assert settings.ingest_cold_start_lookback_seconds == 3600
    assert settings.youtube_max_results == 50
    assert settings.db_path == settings.data_dir / "videos.db"


def test_load_settings_clamps_numeric_options(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")
    monkeypatch.setenv("TUBEFEED_FETCH_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("TUBEFEED_YOUTUBE_MAX_RESULTS", "500")

    settings = load_settings()

    assert settings.fetch_interval_seconds == 1
    assert settings.youtube_max_results == 50


def test_load_settings_unparseable_boolean_keeps_default(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")
    monkeypatch.setenv("TUBEFEED_ENABLE_SCHEDULER", "maybe")

    assert load_settings().scheduler_enabled is True


def test_load_settings_requires_api_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", " , ")

    with pytest.raises(ConfigurationError, match="TUBEFEED_YOUTUBE_API_KEYS"):
        load_settings()

    assert load_settings(validate_credentials=False).youtube_api_keys == []


def test_load_settings_rejects_empty_search_query(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")
    monkeypatch.setenv("TUBEFEED_SEARCH_QUERY", "   ")

    with pytest.raises(ConfigurationError, match="TUBEFEED_SEARCH_QUERY"):
        load_settings()


def test_load_settings_rejects_invalid_telemetry_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")
    monkeypatch.setenv("TUBEFEED_TELEMETRY_SINK", "otlp")

    with pytest.raises(ConfigurationError, match="TUBEFEED_TELEMETRY_SINK"):
        load_settings()


def test_load_settings_rejects_negative_overlap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TUBEFEED_YOUTUBE_API_KEYS", "key-a")
    monkeypatch.setenv("TUBEFEED_INGEST_OVERLAP_SECONDS", "-1")

    with pytest.raises(ConfigurationError, match="ingest_overlap_seconds"):
        load_settings()


def test_load_settings_reads_dotenv_file(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        "TUBEFEED_YOUTUBE_API_KEYS=env-key-a,env-key-b\nTUBEFEED_SEARCH_QUERY=trailer\n",
        encoding="utf-8",
    )

    settings = load_settings()

    assert settings.youtube_api_keys == ["env-key-a", "env-key-b"]
    assert settings.search_query == "trailer"

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".tubefeed"
YOUTUBE_MAX_RESULTS_CEILING = 50
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("videos.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)


class ConfigurationError(ValueError):
    """Startup configuration is unusable; the process must not start scheduling."""


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{TUBEFEED_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _split_api_keys(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        raw_items: list[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        raw_items = list(value)
    else:
        raise ValueError("TUBEFEED_YOUTUBE_API_KEYS must be a comma-separated string.")

    keys: list[str] = []
    for raw_item in raw_items:
        if not isinstance(raw_item, str):
            continue
        stripped = raw_item.strip()
        if stripped:
            keys.append(stripped)
    return keys


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read once at startup from `TUBEFEED_*` environment
    variables (or `.env`); there is no hot reload.
    """

    model_config = SettingsConfigDict(
        env_prefix="TUBEFEED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the video database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("videos.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('videos.db'))}",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="TUBEFEED_ENABLE_SCHEDULER",
        description="Enable the background ingestion scheduler.",
    )
    fetch_interval_seconds: int = Field(
        default=10,
        description="Fixed cadence between ingestion ticks, in seconds.",
    )

    # Ingestion.
    search_query: str = Field(
        default="official",
        description="Search query sent to the YouTube search endpoint every cycle.",
    )
    ingest_overlap_seconds: int = Field(
        default=120,
        ge=0,
        description=(
            "Backward shift applied to the newest stored publish time when computing "
            "the next fetch window."
        ),
    )
    ingest_cold_start_lookback_seconds: int = Field(
        default=3600,
        ge=1,
        description="Lookback window used when no videos are stored yet.",
    )

    # YouTube Data API.
    youtube_api_keys: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Ordered, comma-separated YouTube Data API keys; rotated on quota errors.",
    )
    youtube_max_results: int = Field(
        default=YOUTUBE_MAX_RESULTS_CEILING,
        description="Search page size ceiling (capped at 50 by the API).",
    )
    youtube_http_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout applied to every YouTube Data API call.",
    )
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        description="Expected daily YouTube Data API quota budget per key, used for warnings.",
    )
    youtube_quota_warning_percent: float = Field(
        default=0.8,
        description="Warn when estimated daily usage exceeds this fraction of quota limit.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("search_query", mode="before")
    @classmethod
    def _normalize_search_query(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBEFEED_SEARCH_QUERY must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("TUBEFEED_SEARCH_QUERY must not be empty.")
        return normalized

    @field_validator("youtube_api_keys", mode="before")
    @classmethod
    def _normalize_api_keys(cls, value: Any) -> list[str]:
        return _split_api_keys(value)

    @field_validator("youtube_max_results", mode="after")
    @classmethod
    def _clamp_max_results(cls, value: int) -> int:
        return max(1, min(YOUTUBE_MAX_RESULTS_CEILING, value))

    @field_validator("fetch_interval_seconds", mode="after")
    @classmethod
    def _clamp_fetch_interval(cls, value: int) -> int:
        return max(1, value)

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("TUBEFEED_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("TUBEFEED_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _validate_credentials(*, youtube_api_keys: list[str]) -> None:
    if not youtube_api_keys:
        raise ConfigurationError(
            "TUBEFEED_YOUTUBE_API_KEYS must contain at least one YouTube Data API key."
        )


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings(*, validate_credentials: bool = True) -> AppSettings:
    try:
        settings = AppSettings()
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid TUBEFEED_* configuration: {exc}") from exc
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)

    if validate_credentials:
        _validate_credentials(youtube_api_keys=settings.youtube_api_keys)

    return settings

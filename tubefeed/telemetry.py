from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Protocol

import structlog

TelemetrySinkName = Literal["none", "log"]
AttributeValue = bool | int | float | str | None

REDACTED = "[redacted]"
# Substrings of the lowercased attribute name; "key" also catches developerkey.
_SECRET_MARKERS: tuple[str, ...] = ("authorization", "credential", "key", "secret", "token")
# Upstream free text, never needed to follow a cycle.
_FREE_TEXT_ATTRIBUTES: frozenset[str] = frozenset({"description", "tags", "title"})
_TEXT_LIMIT = 160


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)


class TelemetrySink(Protocol):
    def emit(self, event: TelemetryEvent) -> None:
        ...


class StructuredLogTelemetrySink:
    """One `tubefeed.telemetry` log record per event; the handler decides where it lands."""

    def __init__(self, logger_name: str = "tubefeed.telemetry") -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event: TelemetryEvent) -> None:
        self._logger.info("telemetry", telemetry_event=event.name, **event.attributes)


@dataclass(frozen=True)
class TelemetryClient:
    """
    Emits named events with scrubbed scalar attributes, or nothing without a sink.

    Attributes whose name looks like a credential are replaced with
    `[redacted]`, and upstream free text is never forwarded. Other values are
    reduced to scalars. Timestamps become ISO strings, collections become
    `type[len]`, and long strings are clipped.
    """

    sink: TelemetrySink | None = None
    context: Mapping[str, AttributeValue] = field(default_factory=dict)

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls()

    @property
    def enabled(self) -> bool:
        return self.sink is not None

    def bind(self, **attributes: Any) -> TelemetryClient:
        """A client whose events all carry `attributes` as well."""
        return TelemetryClient(
            sink=self.sink,
            context={**self.context, **scrub_attributes(attributes)},
        )

    def emit(self, event_name: str, **attributes: Any) -> None:
        if self.sink is None:
            return
        self.sink.emit(
            TelemetryEvent(event_name, {**self.context, **scrub_attributes(attributes)})
        )


def build_telemetry_client(*, enabled: bool, sink: TelemetrySinkName) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(sink=StructuredLogTelemetrySink())
    if enabled and sink != "none":
        logging.getLogger("tubefeed.telemetry").warning(
            "unknown telemetry sink; telemetry disabled sink=%s",
            sink,
        )
    return TelemetryClient.disabled()


def scrub_attributes(attributes: Mapping[str, Any]) -> dict[str, AttributeValue]:
    scrubbed: dict[str, AttributeValue] = {}
    for raw_name, value in attributes.items():
        name = str(raw_name).strip().lower()
        if not name:
            continue
        scrubbed[name] = REDACTED if _is_sensitive(name) else _as_attribute_value(value)
    return scrubbed


def _is_sensitive(name: str) -> bool:
    if name in _FREE_TEXT_ATTRIBUTES:
        return True
    return any(marker in name for marker in _SECRET_MARKERS)


def _as_attribute_value(value: Any) -> AttributeValue:
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, Enum):
        return _as_attribute_value(value.value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, str):
        return _clip(value)
    if isinstance(value, list | tuple | set | frozenset | dict):
        return f"{type(value).__name__}[{len(value)}]"
    return type(value).__name__


def _clip(text: str) -> str:
    compact = " ".join(text.split())
    if len(compact) > _TEXT_LIMIT:
        return compact[:_TEXT_LIMIT] + "..."
    return compact

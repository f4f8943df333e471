from __future__ import annotations

import logging
from collections.abc import Sequence

from tubefeed.config import ConfigurationError

LOGGER = logging.getLogger("tubefeed.youtube")


class CredentialPool:
    """
    Ordered YouTube Data API keys with one active entry.

    The active index only moves through `rotate()`, wrapping around, and lives
    as long as the pool instance. Only one ingestion cycle runs at a time, so
    no locking is needed here.
    """

    def __init__(self, credentials: Sequence[str]) -> None:
        normalized = [value.strip() for value in credentials if value.strip()]
        if not normalized:
            raise ConfigurationError("At least one YouTube Data API key is required.")
        self._credentials: tuple[str, ...] = tuple(normalized)
        self._index = 0
        LOGGER.info("youtube credential pool initialized size=%s", len(self._credentials))

    @property
    def size(self) -> int:
        return len(self._credentials)

    @property
    def index(self) -> int:
        return self._index

    def current(self) -> str:
        return self._credentials[self._index]

    def rotate(self) -> str:
        self._index = (self._index + 1) % len(self._credentials)
        LOGGER.info("youtube credential rotated index=%s size=%s", self._index, self.size)
        return self._credentials[self._index]

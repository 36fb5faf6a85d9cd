"""
Error hierarchy for sheetsync.
"""

from __future__ import annotations

from typing import List, Sequence


class SyncError(Exception):
    """Base error for sheetsync."""


class ConfigError(SyncError):
    """Config validation error."""


class SchedulerError(SyncError):
    """Scheduler request rejected."""


class TransportFailure(SyncError):
    """A single fetch attempt failed (status, timeout or network error)."""


class NotTabularData(TransportFailure):
    """Payload looked like an HTML page instead of CSV."""

    HINT = (
        "Received an HTML page instead of CSV data. The sheet may not be published to the web, "
        "the proxy may be blocked, or the feed may sit behind an authentication wall."
    )

    def __init__(self, message: str = HINT):
        super().__init__(message)


class AttemptFailure:
    __slots__ = ("strategy", "detail")

    def __init__(self, strategy: str, detail: str):
        self.strategy = strategy
        self.detail = detail

    def __repr__(self) -> str:
        return f"AttemptFailure(strategy={self.strategy!r}, detail={self.detail!r})"

    def __str__(self) -> str:
        return f"[{self.strategy}] {self.detail}"


class AllStrategiesExhausted(SyncError):
    """Every fetch strategy failed for a URL."""

    def __init__(self, url: str, failures: Sequence[AttemptFailure]):
        self.url = url
        self.failures: List[AttemptFailure] = list(failures)
        if self.failures:
            last = self.failures[-1]
            attempts = "; ".join(str(failure) for failure in self.failures)
            message = (
                f"All {len(self.failures)} fetch strategies failed for {url}. "
                f"Last error: {last}. Attempts: {attempts}"
            )
        else:
            message = f"No fetch strategies configured for {url}."
        super().__init__(message)


class EmptySourceData(SyncError):
    """Source feed decoded to zero rows."""


class MissingKeyColumn(SyncError):
    """The current source row has no value under the key column."""

    def __init__(self, key_column: str, available: Sequence[str]):
        self.key_column = key_column
        self.available = list(available)
        listed = ", ".join(self.available) if self.available else "(none)"
        super().__init__(
            f'Cannot find key column "{key_column}" in the latest source row. '
            f"Available columns: {listed}"
        )


class WriteFailure(SyncError):
    """Destination write collaborator reported a failure."""

"""
Source/destination comparison for a single job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .config import JobSpec
from .csv_decoder import Row
from .errors import EmptySourceData, MissingKeyColumn
from .execution_log import ExecutionLog
from .fetch import FetchChain

logger = logging.getLogger("sheetsync.evaluator")


@dataclass(frozen=True)
class NeedsSync:
    rows: List[Row] = field(default_factory=list)
    key_value: str = ""


@dataclass(frozen=True)
class UpToDate:
    key_value: str


@dataclass(frozen=True)
class Failed:
    error: Exception

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


Decision = Union[NeedsSync, UpToDate, Failed]


def current_key_value(rows: List[Row], key_column: str) -> str:
    # Feeds are append-ordered; the last row is the newest.
    latest = rows[-1]
    value = latest.get(key_column)
    if not value:
        raise MissingKeyColumn(key_column, list(latest.keys()))
    return value


def destination_has_key(rows: List[Row], key_column: str, key_value: str) -> bool:
    return any(row.get(key_column) == key_value for row in rows)


def evaluate(job: JobSpec, chain: FetchChain, log: Optional[ExecutionLog] = None) -> Decision:
    """Decide whether ``job`` needs a write.

    Source is always fetched before destination. Errors never escape; they
    come back as ``Failed`` so the caller decides how to report them.
    """

    def note(message: str, severity: str = "info") -> None:
        if log is not None:
            log.append(f"[{job.name}] {message}", severity, job.id)

    try:
        note("Reading source data...")
        source_rows = chain.fetch(job.source_url).rows
        if not source_rows:
            raise EmptySourceData("Source data is empty")

        key_value = current_key_value(source_rows, job.key_column)
        note(f"Source {job.key_column}: {key_value} ({len(source_rows)} row(s))")

        note("Comparing with destination data...")
        destination_rows = chain.fetch(job.destination_url).rows
        if destination_has_key(destination_rows, job.key_column, key_value):
            note(f"Data already present ({key_value}); nothing to update.", "warning")
            return UpToDate(key_value=key_value)

        note(f"New data found ({key_value}); preparing write.", "success")
        return NeedsSync(rows=source_rows, key_value=key_value)
    except Exception as exc:
        logger.debug("Evaluation of %s failed", job.id, exc_info=True)
        note(f"Error: {str(exc) or type(exc).__name__}", "error")
        return Failed(error=exc)

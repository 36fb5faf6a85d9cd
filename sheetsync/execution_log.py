"""
Append-only execution log consumed by operators and front ends.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, List, Optional

logger = logging.getLogger("sheetsync.events")

UTC = timezone.utc


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


SEVERITY_TO_LEVEL = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: datetime
    message: str
    severity: Severity
    job_id: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "id": self.id,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.job_id:
            payload["jobId"] = self.job_id
        return payload


class ExecutionLog:
    """Newest-first event record; entries are never changed or dropped."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._entries: Deque[LogEntry] = deque()
        self._lock = threading.Lock()

    def append(self, message: str, severity: Severity = Severity.INFO, job_id: Optional[str] = None) -> LogEntry:
        entry = LogEntry(
            id=uuid.uuid4().hex[:12],
            timestamp=self._clock(),
            message=message,
            severity=Severity(severity),
            job_id=job_id,
        )
        with self._lock:
            self._entries.appendleft(entry)
        if job_id:
            logger.log(SEVERITY_TO_LEVEL[entry.severity], "[%s] %s", job_id, message)
        else:
            logger.log(SEVERITY_TO_LEVEL[entry.severity], "%s", message)
        return entry

    def info(self, message: str, job_id: Optional[str] = None) -> LogEntry:
        return self.append(message, Severity.INFO, job_id)

    def success(self, message: str, job_id: Optional[str] = None) -> LogEntry:
        return self.append(message, Severity.SUCCESS, job_id)

    def warning(self, message: str, job_id: Optional[str] = None) -> LogEntry:
        return self.append(message, Severity.WARNING, job_id)

    def error(self, message: str, job_id: Optional[str] = None) -> LogEntry:
        return self.append(message, Severity.ERROR, job_id)

    def entries(self, job_id: Optional[str] = None) -> List[LogEntry]:
        with self._lock:
            snapshot = list(self._entries)
        if job_id is None:
            return snapshot
        return [entry for entry in snapshot if entry.job_id == job_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

"""
Destination write collaborators.

The scheduler hands a batch of rows to a writer once the evaluator decides a
sync is needed. Writers are fire-and-forget from the scheduler's point of
view: success yields a ``WriteResult``, failure raises ``WriteFailure``.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib import error as urllib_error
from urllib import request as urllib_request

from .config import JobSpec, WriterSettings
from .csv_decoder import Row
from .errors import ConfigError, WriteFailure

logger = logging.getLogger("sheetsync.writer")


@dataclass(frozen=True)
class WriteResult:
    message: str
    count: Optional[int] = None


class SheetWriter(ABC):
    @abstractmethod
    def write(self, rows: List[Row], job: JobSpec) -> WriteResult:
        raise NotImplementedError


class SimulatedSheetWriter(SheetWriter):
    """Stand-in writer that only waits, then reports the rows as appended."""

    def __init__(self, delay_seconds: float = 1.5, sleep: Callable[[float], None] = time.sleep):
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def write(self, rows: List[Row], job: JobSpec) -> WriteResult:
        if self.delay_seconds > 0:
            self._sleep(self.delay_seconds)
        logger.info("Simulated write of %s row(s) for %s", len(rows), job.id)
        return WriteResult(message=f"Success: Appended {len(rows)} new rows to {job.name}", count=len(rows))


class WebhookWriter(SheetWriter):
    """POSTs the batch as JSON to a spreadsheet web-app endpoint."""

    def __init__(self, endpoint: str, timeout_ms: int = 10000):
        self.endpoint = endpoint
        self.timeout_ms = timeout_ms

    def build_payload(self, rows: List[Row], job: JobSpec) -> Dict[str, Any]:
        return {
            "jobId": job.id,
            "jobName": job.name,
            "keyColumn": job.key_column,
            "rows": rows,
        }

    def write(self, rows: List[Row], job: JobSpec) -> WriteResult:
        body = json.dumps(self.build_payload(rows, job), ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        req = urllib_request.Request(url=self.endpoint, data=body, method="POST", headers=headers)
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                status = response.status
                text = response.read().decode("utf-8", errors="replace")
        except urllib_error.HTTPError as exc:
            raise WriteFailure(f"Write endpoint returned HTTP {exc.code}") from exc
        except urllib_error.URLError as exc:
            raise WriteFailure(f"Write endpoint unreachable: {exc.reason}") from exc
        except OSError as exc:
            raise WriteFailure(f"Write request failed: {exc}") from exc

        if not 200 <= status < 300:
            raise WriteFailure(f"Write endpoint returned HTTP {status}")

        count: Optional[int] = len(rows)
        try:
            ack = json.loads(text) if text.strip() else {}
        except ValueError:
            ack = {}
        if isinstance(ack, dict):
            if ack.get("success") is False:
                raise WriteFailure(f"Write endpoint rejected batch: {ack.get('error') or 'unknown error'}")
            if isinstance(ack.get("count"), int):
                count = ack["count"]
        return WriteResult(message=f"Success: Appended {count} new rows to {job.name}", count=count)


def build_writer(settings: WriterSettings) -> SheetWriter:
    if settings.kind == "simulated":
        return SimulatedSheetWriter(delay_seconds=settings.delay_seconds)
    if settings.kind == "webhook":
        return WebhookWriter(settings.endpoint, timeout_ms=settings.timeout_ms)
    raise ConfigError(f'Error: Unsupported writer kind "{settings.kind}".')

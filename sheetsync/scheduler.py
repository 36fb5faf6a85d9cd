"""
Time-slot scheduler driving sync runs.

One tick evaluates every job's slots against the wall clock truncated to the
minute. A slot fires at most once per calendar day per job; the fired
``(day, slot)`` keys live in a small per-job ring buffer. Fired runs are
dispatched onto their own threads so the tick loop never waits on a job.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple, Union

from croniter import croniter

from .config import DEFAULT_HISTORY_SIZE, DEFAULT_TICK_SECONDS, AppConfig, JobSpec, ScheduleSlot
from .errors import SchedulerError, WriteFailure
from .evaluator import Failed, NeedsSync, UpToDate, evaluate
from .execution_log import ExecutionLog
from .fetch import FetchChain, Transport
from .writer import SheetWriter, build_writer

logger = logging.getLogger("sheetsync.scheduler")

UTC = timezone.utc

Spawn = Callable[[Callable[[], None], str], None]


class JobRunState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    SYNCING = "syncing"
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


ACTIVE_STATES = {JobRunState.CHECKING, JobRunState.SYNCING}


def slot_key(day: str, slot: ScheduleSlot) -> str:
    return f"{day}-{slot.text}"


class SchedulerState:
    """Per-job run status, last completion time and fired-slot history."""

    def __init__(self, job_ids: Iterable[str], history_size: int = DEFAULT_HISTORY_SIZE):
        self._lock = threading.Lock()
        self._status: Dict[str, JobRunState] = {}
        self._last_run: Dict[str, Optional[datetime]] = {}
        self._last_error: Dict[str, Optional[str]] = {}
        self._fired: Dict[str, Deque[str]] = {}
        for job_id in job_ids:
            self._status[job_id] = JobRunState.IDLE
            self._last_run[job_id] = None
            self._last_error[job_id] = None
            self._fired[job_id] = deque(maxlen=history_size)

    def status(self, job_id: str) -> JobRunState:
        with self._lock:
            return self._status[job_id]

    def set_status(self, job_id: str, status: JobRunState) -> None:
        with self._lock:
            self._status[job_id] = status

    def is_busy(self, job_id: str) -> bool:
        return self.status(job_id) in ACTIVE_STATES

    def finish(self, job_id: str, status: JobRunState, at: datetime, error: Optional[str] = None) -> None:
        with self._lock:
            self._status[job_id] = status
            self._last_run[job_id] = at
            self._last_error[job_id] = error

    def last_run(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_run[job_id]

    def last_error(self, job_id: str) -> Optional[str]:
        with self._lock:
            return self._last_error[job_id]

    # Fired-slot history is only touched from the tick handler.
    def has_fired(self, job_id: str, key: str) -> bool:
        return key in self._fired[job_id]

    def record_fired(self, job_id: str, key: str) -> None:
        self._fired[job_id].append(key)

    def fired(self, job_id: str) -> List[str]:
        return list(self._fired[job_id])

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                job_id: {
                    "status": status.value,
                    "last_run": self._last_run[job_id],
                    "last_error": self._last_error[job_id],
                }
                for job_id, status in self._status.items()
            }


class Scheduler:
    def __init__(
        self,
        jobs: List[JobSpec],
        chain: FetchChain,
        writer: SheetWriter,
        log: Optional[ExecutionLog] = None,
        timezone: tzinfo = UTC,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
        spawn: Optional[Spawn] = None,
    ):
        if not 0 < tick_seconds < 60:
            raise SchedulerError("Tick interval must be between 0 and 60 seconds to catch every minute slot.")
        self.jobs = list(jobs)
        self._jobs_by_id = {job.id: job for job in self.jobs}
        self.chain = chain
        self.writer = writer
        self.log = log or ExecutionLog()
        self.timezone = timezone
        self.tick_seconds = tick_seconds
        self.state = SchedulerState(self._jobs_by_id.keys(), history_size)
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._spawn = spawn or self._spawn_thread
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        transport: Optional[Transport] = None,
        writer: Optional[SheetWriter] = None,
        log: Optional[ExecutionLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
        spawn: Optional[Spawn] = None,
    ) -> "Scheduler":
        return cls(
            jobs=config.jobs,
            chain=FetchChain.from_settings(config.strategies, transport=transport),
            writer=writer or build_writer(config.writer),
            log=log,
            timezone=config.timezone,
            tick_seconds=config.scheduler.tick_seconds,
            history_size=config.scheduler.history_size,
            clock=clock,
            spawn=spawn,
        )

    @property
    def auto_mode(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    def job(self, job_id: str) -> JobSpec:
        try:
            return self._jobs_by_id[job_id]
        except KeyError:
            raise SchedulerError(f'Unknown job "{job_id}".') from None

    def now_local(self, now: Optional[datetime] = None) -> datetime:
        value = now or self._clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=self.timezone)
        return value.astimezone(self.timezone)

    def run_job(self, job: Union[JobSpec, str], automatic: bool = False) -> JobRunState:
        """Run one job through check -> sync and return its final state.

        This is the supervision boundary: nothing raised below escapes.
        """
        spec = self.job(job) if isinstance(job, str) else job
        started = time.monotonic()
        trigger_label = "[auto]" if automatic else "[manual]"
        self.state.set_status(spec.id, JobRunState.CHECKING)
        self.log.info(f"{trigger_label} Starting job: {spec.name}", spec.id)

        final = JobRunState.ERROR
        error_text: Optional[str] = None
        try:
            decision = evaluate(spec, self.chain, self.log)
            if isinstance(decision, Failed):
                raise decision.error
            if isinstance(decision, UpToDate):
                final = JobRunState.SKIPPED
            elif isinstance(decision, NeedsSync):
                self.state.set_status(spec.id, JobRunState.SYNCING)
                try:
                    result = self.writer.write(decision.rows, spec)
                except WriteFailure:
                    raise
                except Exception as exc:
                    raise WriteFailure(str(exc) or type(exc).__name__) from exc
                self.log.success(result.message, spec.id)
                final = JobRunState.SUCCESS
        except Exception as exc:
            final = JobRunState.ERROR
            error_text = str(exc) or type(exc).__name__
            self.log.error(f"Job failed: {spec.name} ({error_text})", spec.id)
        finally:
            self.state.finish(spec.id, final, self._clock(), error_text)

        logger.info(
            "Job %s finished with state=%s in %.2fs",
            spec.id,
            final.value,
            time.monotonic() - started,
        )
        return final

    def trigger(self, job: Union[JobSpec, str], automatic: bool = False) -> None:
        spec = self.job(job) if isinstance(job, str) else job
        logger.info("Dispatching %s (automatic=%s)", spec.id, automatic)
        self._spawn(lambda: self._run_quietly(spec, automatic), f"sheetsync-job-{spec.id}")

    def run_all(self) -> Dict[str, JobRunState]:
        if self.auto_mode:
            raise SchedulerError(
                "Run-all is disabled while automatic mode is on; trigger jobs individually instead."
            )
        self.log.info("--- Starting batch run of all jobs ---")
        results: Dict[str, JobRunState] = {}
        for spec in self.jobs:
            if not spec.enabled:
                continue
            results[spec.id] = self.run_job(spec)
        self.log.info("--- Batch run finished ---")
        return results

    def due_slots(self, local_now: datetime) -> List[Tuple[JobSpec, ScheduleSlot, str]]:
        current = local_now.strftime("%H:%M")
        day = local_now.date().isoformat()
        due: List[Tuple[JobSpec, ScheduleSlot, str]] = []
        for spec in self.jobs:
            if not spec.enabled:
                continue
            for slot in spec.slots:
                if slot.text != current:
                    continue
                key = slot_key(day, slot)
                if self.state.has_fired(spec.id, key):
                    continue
                due.append((spec, slot, key))
        return due

    def tick(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Fire every unfired slot matching the current minute.

        Returns the ``(job_id, slot)`` pairs fired by this tick.
        """
        with self._tick_lock:
            local_now = self.now_local(now).replace(second=0, microsecond=0)
            fired: List[Tuple[str, str]] = []
            for spec, slot, key in self.due_slots(local_now):
                self.state.record_fired(spec.id, key)
                logger.info("Slot %s fired for %s (%s)", slot.text, spec.id, key)
                self.trigger(spec, automatic=True)
                fired.append((spec.id, slot.text))
            return fired

    def start(self) -> None:
        if self.auto_mode:
            return
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._loop, daemon=True, name="sheetsync-scheduler")
        self._loop_thread.start()
        self.log.info(f"Automatic mode enabled (tick every {self.tick_seconds:g}s).")

    def stop(self, timeout_seconds: float = 5.0) -> None:
        if self._loop_thread is None:
            return
        self._stop_event.set()
        self._loop_thread.join(timeout=timeout_seconds)
        if self._loop_thread.is_alive():
            logger.warning("Scheduler loop still running after %ss; automatic mode stays on.", timeout_seconds)
            return
        self._loop_thread = None
        self.log.info("Automatic mode disabled.")

    def wait_idle(self, timeout_seconds: Optional[float] = None) -> bool:
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while True:
            with self._threads_lock:
                self._threads = [thread for thread in self._threads if thread.is_alive()]
                pending = list(self._threads)
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._threads_lock:
                    return not any(thread.is_alive() for thread in self._threads)

    def next_runs(self, job: Union[JobSpec, str], count: int, now: Optional[datetime] = None) -> List[datetime]:
        spec = self.job(job) if isinstance(job, str) else job
        return next_slot_times(spec.slots, count, self.now_local(now))

    def _loop(self) -> None:
        logger.info("Starting scheduler loop with %s job(s), tick_seconds=%s", len(self.jobs), self.tick_seconds)
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:  # pragma: no cover - defensive
                logger.exception("Scheduler tick failed: %s", exc)
            self._stop_event.wait(self.tick_seconds)
        logger.info("Scheduler loop stopped.")

    def _run_quietly(self, spec: JobSpec, automatic: bool) -> None:
        try:
            self.run_job(spec, automatic=automatic)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Unhandled error in job %s: %s", spec.id, exc)

    def _spawn_thread(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, daemon=True, name=name)
        with self._threads_lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
        thread.start()


def next_slot_times(slots: Iterable[ScheduleSlot], count: int, local_now: datetime) -> List[datetime]:
    """Upcoming fire times across all slots, soonest first."""
    candidates: List[datetime] = []
    for slot in slots:
        iterator = croniter(slot.cron_expr, local_now)
        for _ in range(count):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=local_now.tzinfo)
            candidates.append(nxt)
    candidates.sort()
    return candidates[:count]

"""
Command line entry point: validate, preview, check, run and daemon.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from .config import DEFAULT_CONFIG, AppConfig, parse_config
from .errors import SyncError
from .evaluator import Failed, NeedsSync, UpToDate, evaluate
from .execution_log import ExecutionLog
from .fetch import FetchChain
from .scheduler import JobRunState, Scheduler

LOG_FILE = "sheetsync.log"
DEFAULT_PREVIEW_COUNT = 5

logger = logging.getLogger("sheetsync")


def setup_logging(log_file: Optional[str] = LOG_FILE) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def select_jobs(config: AppConfig, job_id: Optional[str], include_disabled: bool = False):
    selected = config.jobs
    if job_id:
        selected = [config.job(job_id)]
        return selected
    if include_disabled:
        return selected
    selected = [job for job in selected if job.enabled]
    if not selected:
        raise SyncError("No enabled jobs selected.")
    return selected


def command_validate(config_path: Path) -> int:
    config = parse_config(config_path)
    enabled_count = sum(1 for job in config.jobs if job.enabled)
    print(f"Config valid: {config_path}")
    print(f"Timezone: {config.timezone_name}")
    print(f"Fetch strategies: {', '.join(item.name for item in config.strategies)}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    for job in config.jobs:
        schedule = job.schedule_text or "manual only"
        print(f"- {job.id}: {job.name} [{schedule}] key={job.key_column}")
    return 0


def command_preview(config_path: Path, job_id: Optional[str], count: int) -> int:
    config = parse_config(config_path)
    scheduler = Scheduler.from_config(config)
    for job in select_jobs(config, job_id, include_disabled=True):
        print("=" * 80)
        print(f"Job: {job.id} - {job.name} (enabled={job.enabled})")
        if job.description:
            print(job.description)
        print(f"Key column: {job.key_column}")
        print(f"Source: {job.source_url}")
        print(f"Destination: {job.destination_url}")
        if not job.slots:
            print("Schedule: manual only")
            continue
        print(f"Schedule: {job.schedule_text} ({config.timezone_name})")
        print(f"Next {count} run(s):")
        for run_at in scheduler.next_runs(job, count):
            print(f"- {run_at.isoformat()}")
    print("=" * 80)
    return 0


def command_check(config_path: Path, job_id: Optional[str]) -> int:
    config = parse_config(config_path)
    chain = FetchChain.from_settings(config.strategies)
    log = ExecutionLog()
    exit_code = 0
    for job in select_jobs(config, job_id):
        decision = evaluate(job, chain, log)
        if isinstance(decision, NeedsSync):
            print(f"{job.id}: needs sync ({len(decision.rows)} row(s), {job.key_column}={decision.key_value})")
        elif isinstance(decision, UpToDate):
            print(f"{job.id}: up to date ({job.key_column}={decision.key_value})")
        elif isinstance(decision, Failed):
            print(f"{job.id}: failed ({decision.message})")
            exit_code = 1
    return exit_code


def command_run(config_path: Path, job_id: Optional[str]) -> int:
    config = parse_config(config_path)
    scheduler = Scheduler.from_config(config)
    if job_id:
        results = {job_id: scheduler.run_job(job_id)}
    else:
        select_jobs(config, None)
        results = scheduler.run_all()
    for name, state in results.items():
        print(f"{name}: {state.value}")
    return 1 if any(state == JobRunState.ERROR for state in results.values()) else 0


def command_daemon(config_path: Path, tick_seconds: Optional[int]) -> int:
    config = parse_config(config_path)
    select_jobs(config, None)
    scheduler = Scheduler.from_config(config)
    if tick_seconds is not None:
        scheduler.tick_seconds = tick_seconds
    logger.info(
        "Starting daemon with %s enabled job(s), tick_seconds=%s, timezone=%s",
        sum(1 for job in config.jobs if job.enabled),
        scheduler.tick_seconds,
        config.timezone_name,
    )
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        scheduler.stop()
        scheduler.wait_idle(timeout_seconds=30)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="sheetsync: scheduled CSV feed synchronizer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to sheetsync YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config")
    validate_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming automatic runs")
    preview_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    preview_parser.add_argument("--job", help="Preview a single job by id")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    check_parser = subparsers.add_parser("check", help="Compare source and destination without writing")
    check_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    check_parser.add_argument("--job", help="Check one job by id")

    run_parser = subparsers.add_parser("run", help="Run one job, or all enabled jobs in sequence")
    run_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    run_parser.add_argument("--job", help="Run one job by id")

    daemon_parser = subparsers.add_parser("daemon", help="Run in automatic mode until interrupted")
    daemon_parser.add_argument("--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})")
    daemon_parser.add_argument(
        "--tick-seconds",
        type=int,
        default=None,
        help="Tick interval in seconds, 1-59 (default: from config, else 10)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise SyncError("--count must be >= 1")
            return command_preview(config_path, job_id=args.job, count=args.count)
        if args.command == "check":
            return command_check(config_path, job_id=args.job)
        if args.command == "run":
            return command_run(config_path, job_id=args.job)
        if args.command == "daemon":
            if args.tick_seconds is not None and not 1 <= args.tick_seconds <= 59:
                raise SyncError("--tick-seconds must be between 1 and 59")
            return command_daemon(config_path, tick_seconds=args.tick_seconds)
        raise SyncError(f"Unsupported command: {args.command}")
    except SyncError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1

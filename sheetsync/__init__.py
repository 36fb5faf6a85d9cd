"""
sheetsync: scheduled synchronization of published CSV feeds with key-column dedup.
"""

from .config import AppConfig, JobSpec, ScheduleSlot, parse_config
from .csv_decoder import decode
from .errors import (
    AllStrategiesExhausted,
    ConfigError,
    EmptySourceData,
    MissingKeyColumn,
    NotTabularData,
    SchedulerError,
    SyncError,
    TransportFailure,
    WriteFailure,
)
from .evaluator import Failed, NeedsSync, UpToDate, evaluate
from .execution_log import ExecutionLog, LogEntry, Severity
from .fetch import FetchChain, FetchResult
from .scheduler import JobRunState, Scheduler, SchedulerState
from .writer import SimulatedSheetWriter, WebhookWriter, WriteResult

__version__ = "1.0.0"

__all__ = [
    "AllStrategiesExhausted",
    "AppConfig",
    "ConfigError",
    "EmptySourceData",
    "ExecutionLog",
    "Failed",
    "FetchChain",
    "FetchResult",
    "JobRunState",
    "JobSpec",
    "LogEntry",
    "MissingKeyColumn",
    "NeedsSync",
    "NotTabularData",
    "ScheduleSlot",
    "Scheduler",
    "SchedulerError",
    "SchedulerState",
    "Severity",
    "SimulatedSheetWriter",
    "SyncError",
    "TransportFailure",
    "UpToDate",
    "WebhookWriter",
    "WriteFailure",
    "WriteResult",
    "decode",
    "evaluate",
    "parse_config",
]

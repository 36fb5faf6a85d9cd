"""
YAML configuration loading and validation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .errors import ConfigError
from .fetch import DEFAULT_STRATEGY_SETTINGS, VALID_STRATEGY_KINDS, StrategySettings

DEFAULT_CONFIG = "sheetsync.yaml"
DEFAULT_TICK_SECONDS = 10
DEFAULT_HISTORY_SIZE = 10
DEFAULT_WRITE_DELAY_SECONDS = 1.5
DEFAULT_WEBHOOK_TIMEOUT_MS = 10000
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
SLOT_SEPARATOR = "&"
VALID_WRITER_KINDS = {"simulated", "webhook"}


@dataclass(frozen=True)
class ScheduleSlot:
    text: str
    hour: int
    minute: int

    @property
    def cron_expr(self) -> str:
        return f"{self.minute} {self.hour} * * *"


@dataclass(frozen=True)
class JobSpec:
    id: str
    name: str
    source_url: str
    destination_url: str
    key_column: str
    slots: Tuple[ScheduleSlot, ...] = ()
    description: str = ""
    enabled: bool = True

    @property
    def schedule_text(self) -> str:
        return f" {SLOT_SEPARATOR} ".join(slot.text for slot in self.slots)


@dataclass(frozen=True)
class WriterSettings:
    kind: str = "simulated"
    delay_seconds: float = DEFAULT_WRITE_DELAY_SECONDS
    endpoint: str = ""
    timeout_ms: int = DEFAULT_WEBHOOK_TIMEOUT_MS


@dataclass(frozen=True)
class SchedulerSettings:
    tick_seconds: int = DEFAULT_TICK_SECONDS
    history_size: int = DEFAULT_HISTORY_SIZE


@dataclass(frozen=True)
class AppConfig:
    jobs: List[JobSpec]
    timezone: ZoneInfo
    timezone_name: str
    strategies: List[StrategySettings] = field(default_factory=lambda: list(DEFAULT_STRATEGY_SETTINGS))
    writer: WriterSettings = field(default_factory=WriterSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    def job(self, job_id: str) -> JobSpec:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise ConfigError(f'Error: Unknown job "{job_id}".')


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    if maximum is not None and value > maximum:
        raise ConfigError(f"Error: {field_path} must be <= {maximum}.")
    return value


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0) -> float:
    if value is None:
        return default
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum:g}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_http_url(value: Any, field_path: str) -> str:
    url = ensure_str(value, field_path)
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigError(f"Error: {field_path} must be an HTTP URL.")
    return url


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def parse_hhmm(value: Any, field_path: str) -> ScheduleSlot:
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be HH:MM string.")
    text = value.strip()
    match = HHMM_RE.match(text)
    if not match:
        raise ConfigError(f'Error: {field_path} must be HH:MM (24-hour), got "{value}".')
    return ScheduleSlot(text=text, hour=int(match.group(1)), minute=int(match.group(2)))


def parse_slots(raw: Any, field_path: str) -> Tuple[ScheduleSlot, ...]:
    """Accept ``"14:00"``, ``"14:00 & 06:00"`` or a list of HH:MM strings."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        items: List[Any] = [part for part in raw.split(SLOT_SEPARATOR)]
    elif isinstance(raw, list):
        items = list(raw)
    else:
        raise ConfigError(f"Error: {field_path} must be an HH:MM string or a list of HH:MM strings.")

    slots: List[ScheduleSlot] = []
    seen: Set[str] = set()
    for idx, item in enumerate(items):
        slot = parse_hhmm(item, f"{field_path}[{idx}]")
        if slot.text in seen:
            raise ConfigError(f'Error: Duplicate slot "{slot.text}" at {field_path}.')
        seen.add(slot.text)
        slots.append(slot)
    return tuple(slots)


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_strategies(raw: Any, field_path: str = "fetch.strategies") -> List[StrategySettings]:
    if raw is None:
        return list(DEFAULT_STRATEGY_SETTINGS)
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")

    seen_names: Set[str] = set()
    strategies: List[StrategySettings] = []
    for idx, item in enumerate(raw):
        path = f"{field_path}[{idx}]"
        item = ensure_mapping(item, path, {"name", "kind", "base_url", "timeout", "envelope_field"})
        name = ensure_str(item.get("name"), f"{path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate strategy name "{name}".')
        seen_names.add(name)

        kind = ensure_str(item.get("kind"), f"{path}.kind").lower()
        if kind not in VALID_STRATEGY_KINDS:
            raise ConfigError(
                f'Error: {path}.kind must be one of {sorted(VALID_STRATEGY_KINDS)}, got "{kind}".'
            )
        base_url = ""
        if kind == "direct":
            if "base_url" in item:
                raise ConfigError(f'Error: {path} direct strategy cannot include "base_url".')
        else:
            base_url = ensure_http_url(item.get("base_url"), f"{path}.base_url")
        timeout = ensure_number(item.get("timeout"), f"{path}.timeout", 10.0, 0.1)
        envelope_field = "contents"
        if "envelope_field" in item:
            if kind != "envelope":
                raise ConfigError(f'Error: {path}.envelope_field is only valid for kind "envelope".')
            envelope_field = ensure_str(item.get("envelope_field"), f"{path}.envelope_field")
        strategies.append(
            StrategySettings(
                name=name,
                kind=kind,
                timeout=timeout,
                base_url=base_url,
                envelope_field=envelope_field,
            )
        )
    return strategies


def parse_writer_settings(raw: Any, field_path: str = "writer") -> WriterSettings:
    raw = ensure_mapping(raw, field_path, {"kind", "delay_seconds", "endpoint", "timeout_ms"})
    kind = ensure_str(raw.get("kind", "simulated"), f"{field_path}.kind").lower()
    if kind not in VALID_WRITER_KINDS:
        raise ConfigError(f'Error: {field_path}.kind must be one of {sorted(VALID_WRITER_KINDS)}, got "{kind}".')
    delay_seconds = ensure_number(raw.get("delay_seconds"), f"{field_path}.delay_seconds", DEFAULT_WRITE_DELAY_SECONDS)
    timeout_ms = ensure_int(raw.get("timeout_ms"), f"{field_path}.timeout_ms", DEFAULT_WEBHOOK_TIMEOUT_MS, 1)
    endpoint = ""
    if kind == "webhook":
        endpoint = ensure_http_url(raw.get("endpoint"), f"{field_path}.endpoint")
    elif "endpoint" in raw:
        raise ConfigError(f'Error: {field_path}.endpoint is only valid for kind "webhook".')
    return WriterSettings(kind=kind, delay_seconds=delay_seconds, endpoint=endpoint, timeout_ms=timeout_ms)


def parse_scheduler_settings(raw: Any, field_path: str = "scheduler") -> SchedulerSettings:
    raw = ensure_mapping(raw, field_path, {"tick_seconds", "history_size"})
    # Ticks must land inside every minute or a slot can be missed.
    tick_seconds = ensure_int(raw.get("tick_seconds"), f"{field_path}.tick_seconds", DEFAULT_TICK_SECONDS, 1, 59)
    history_size = ensure_int(raw.get("history_size"), f"{field_path}.history_size", DEFAULT_HISTORY_SIZE, 1)
    return SchedulerSettings(tick_seconds=tick_seconds, history_size=history_size)


def parse_jobs(raw: Any, default_key_column: Optional[str], field_path: str = "jobs") -> List[JobSpec]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")

    seen_ids: Set[str] = set()
    jobs: List[JobSpec] = []
    for idx, job_raw in enumerate(raw):
        path = f"{field_path}[{idx}]"
        job_raw = ensure_mapping(
            job_raw,
            path,
            {
                "id",
                "name",
                "description",
                "source_url",
                "destination_url",
                "key_column",
                "schedule",
                "enabled",
            },
        )
        if not job_raw:
            raise ConfigError(f"Error: {path} must be a mapping.")

        job_id = ensure_str(job_raw.get("id"), f"{path}.id")
        if job_id in seen_ids:
            raise ConfigError(f'Error: Duplicate job id "{job_id}".')
        seen_ids.add(job_id)

        name = ensure_str(job_raw.get("name", job_id), f"{path}.name")
        description = job_raw.get("description", "") or ""
        if not isinstance(description, str):
            raise ConfigError(f"Error: {path}.description must be a string.")

        key_column_raw = job_raw.get("key_column", default_key_column)
        if key_column_raw is None:
            raise ConfigError(f"Error: {path}.key_column is required (no defaults.key_column set).")
        key_column = ensure_str(key_column_raw, f"{path}.key_column")

        jobs.append(
            JobSpec(
                id=job_id,
                name=name,
                description=description.strip(),
                source_url=ensure_http_url(job_raw.get("source_url"), f"{path}.source_url"),
                destination_url=ensure_http_url(job_raw.get("destination_url"), f"{path}.destination_url"),
                key_column=key_column,
                slots=parse_slots(job_raw.get("schedule"), f"{path}.schedule"),
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
            )
        )
    return jobs


def parse_config(config_path: Path) -> AppConfig:
    payload = _load_config_payload(config_path)

    unknown_top = set(payload.keys()) - {"version", "defaults", "fetch", "writer", "scheduler", "jobs"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = ensure_mapping(payload.get("defaults"), "defaults", {"timezone", "key_column"})
    _, system_tz_name = system_timezone()
    timezone_name = defaults.get("timezone", system_tz_name)
    if not isinstance(timezone_name, str):
        raise ConfigError("Error: defaults.timezone must be a timezone string.")
    timezone_obj = parse_timezone(timezone_name, "defaults.timezone")

    default_key_column = None
    if "key_column" in defaults:
        default_key_column = ensure_str(defaults["key_column"], "defaults.key_column")

    fetch_raw = ensure_mapping(payload.get("fetch"), "fetch", {"strategies"})

    return AppConfig(
        jobs=parse_jobs(payload.get("jobs"), default_key_column),
        timezone=timezone_obj,
        timezone_name=timezone_name,
        strategies=parse_strategies(fetch_raw.get("strategies")),
        writer=parse_writer_settings(payload.get("writer")),
        scheduler=parse_scheduler_settings(payload.get("scheduler")),
    )

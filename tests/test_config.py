from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from sheetsync.config import parse_config, parse_slots
from sheetsync.errors import ConfigError
from sheetsync.fetch import DEFAULT_STRATEGY_SETTINGS

REPO_CONFIG = Path(__file__).resolve().parents[1] / "sheetsync.yaml"


def _base_config(**job_overrides: object) -> dict:
    job = {
        "id": "job-1",
        "name": "Daily prices",
        "source_url": "https://feeds.test/source.csv",
        "destination_url": "https://feeds.test/destination.csv",
        "key_column": "date",
        "schedule": "14:00",
    }
    job.update(job_overrides)
    return {
        "version": 1,
        "defaults": {"timezone": "UTC"},
        "jobs": [job],
    }


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "sheetsync.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def test_shipped_config_parses() -> None:
    config = parse_config(REPO_CONFIG)
    assert [job.id for job in config.jobs] == ["job-stock-202512", "job-global-202601", "job-stock-202601"]
    global_job = config.job("job-global-202601")
    assert [slot.text for slot in global_job.slots] == ["14:00", "06:00"]
    assert global_job.key_column == "日期 tradetime"
    # Inherits defaults.key_column.
    assert config.job("job-stock-202601").key_column == "日期"
    assert config.job("job-stock-202601").enabled is False
    assert config.timezone_name == "Asia/Taipei"
    assert [item.name for item in config.strategies] == ["corsproxy", "allorigins", "codetabs", "direct"]


def test_minimal_config_uses_defaults(tmp_path: Path) -> None:
    config = parse_config(_write_config(tmp_path, _base_config()))
    assert config.strategies == list(DEFAULT_STRATEGY_SETTINGS)
    assert config.writer.kind == "simulated"
    assert config.writer.delay_seconds == 1.5
    assert config.scheduler.tick_seconds == 10
    assert config.scheduler.history_size == 10


def test_schedule_accepts_ampersand_string_and_list() -> None:
    assert [slot.text for slot in parse_slots("14:00 & 06:00", "schedule")] == ["14:00", "06:00"]
    assert [slot.text for slot in parse_slots(["09:30", "21:45"], "schedule")] == ["09:30", "21:45"]
    assert parse_slots(None, "schedule") == ()
    assert parse_slots("06:05", "schedule")[0].cron_expr == "5 6 * * *"


def test_invalid_slot_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="HH:MM"):
        parse_config(_write_config(tmp_path, _base_config(schedule="25:00")))


def test_duplicate_slot_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match='Duplicate slot "14:00"'):
        parse_config(_write_config(tmp_path, _base_config(schedule="14:00 & 14:00")))


def test_duplicate_job_id_rejected(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["jobs"].append(dict(cfg["jobs"][0]))
    with pytest.raises(ConfigError, match='Duplicate job id "job-1"'):
        parse_config(_write_config(tmp_path, cfg))


def test_unknown_job_key_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Unknown keys in jobs\\[0\\]"):
        parse_config(_write_config(tmp_path, _base_config(sheet_id="abc")))


def test_key_column_required_without_default(tmp_path: Path) -> None:
    cfg = _base_config()
    del cfg["jobs"][0]["key_column"]
    with pytest.raises(ConfigError, match="key_column is required"):
        parse_config(_write_config(tmp_path, cfg))


def test_non_http_url_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="source_url must be an HTTP URL"):
        parse_config(_write_config(tmp_path, _base_config(source_url="ftp://feeds.test/x.csv")))


def test_unknown_timezone_rejected(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["defaults"]["timezone"] = "Asia/Nowhere"
    with pytest.raises(ConfigError, match="Invalid timezone"):
        parse_config(_write_config(tmp_path, cfg))


def test_tick_seconds_must_stay_under_a_minute(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["scheduler"] = {"tick_seconds": 60}
    with pytest.raises(ConfigError, match="tick_seconds must be <= 59"):
        parse_config(_write_config(tmp_path, cfg))


def test_webhook_writer_requires_endpoint(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["writer"] = {"kind": "webhook"}
    with pytest.raises(ConfigError, match="writer.endpoint must be a non-empty string"):
        parse_config(_write_config(tmp_path, cfg))

    cfg["writer"] = {"kind": "webhook", "endpoint": "https://script.test/exec", "timeout_ms": 2000}
    config = parse_config(_write_config(tmp_path, cfg))
    assert config.writer.endpoint == "https://script.test/exec"
    assert config.writer.timeout_ms == 2000


def test_custom_strategy_list(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["fetch"] = {
        "strategies": [
            {"name": "wrapped", "kind": "envelope", "base_url": "https://relay.test/get?url=", "timeout": 12,
             "envelope_field": "body"},
            {"name": "direct", "kind": "direct", "timeout": 3},
        ]
    }
    config = parse_config(_write_config(tmp_path, cfg))
    assert [(s.name, s.kind, s.timeout, s.envelope_field) for s in config.strategies] == [
        ("wrapped", "envelope", 12.0, "body"),
        ("direct", "direct", 3.0, "contents"),
    ]


def test_strategy_validation(tmp_path: Path) -> None:
    cfg = _base_config()
    cfg["fetch"] = {"strategies": [{"name": "relay", "kind": "relay", "timeout": 5}]}
    with pytest.raises(ConfigError, match="base_url must be a non-empty string"):
        parse_config(_write_config(tmp_path, cfg))

    cfg["fetch"] = {"strategies": [{"name": "d", "kind": "direct", "envelope_field": "x"}]}
    with pytest.raises(ConfigError, match='only valid for kind "envelope"'):
        parse_config(_write_config(tmp_path, cfg))


def test_missing_file_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        parse_config(tmp_path / "missing.yaml")

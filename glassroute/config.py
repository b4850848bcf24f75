from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]


@dataclass(slots=True)
class DatabaseConfig:
    path: Path
    busy_timeout_seconds: float = 10.0


@dataclass(slots=True)
class TelemetryConfig:
    path: Path
    retention_days: int = 365
    purge_interval_seconds: int = 3600


@dataclass(slots=True)
class QueueConfig:
    attempts: int = 3
    backoff_seconds: float = 2.0
    concurrency: int = 5
    auto_start: bool = True
    failed_limit: int = 500


@dataclass(slots=True)
class ThresholdConfig:
    pending_min: float = 60.0
    critical_min: float = 80.0
    min_event_fill: float = 60.0
    route_min_fill: float = 60.0
    route_max_points: int = 50


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig
    telemetry: TelemetryConfig
    queue: QueueConfig = field(default_factory=QueueConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)


class ConfigError(RuntimeError):
    pass


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected mapping in {path}")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {}) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"`{name}` must be a dictionary")
    return section


def _resolve_config_dir() -> Path:
    env_dir = os.getenv("GLASSROUTE_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return (PROJECT_ROOT / "config").resolve()


def _resolve_path(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return path


def load_config(config_dir: Path | None = None) -> AppConfig:
    directory = config_dir or _resolve_config_dir()
    if not directory.exists():
        raise ConfigError(f"Config directory not found: {directory}")

    service_cfg = _read_yaml(directory / "service.yaml")
    thresholds_cfg = _read_yaml(directory / "thresholds.yaml")

    db_raw = _section(service_cfg, "database")
    telemetry_raw = _section(service_cfg, "telemetry")
    queue_raw = _section(service_cfg, "queue")

    database = DatabaseConfig(
        path=_resolve_path(str(db_raw.get("path", "./data/glassroute.db"))),
        busy_timeout_seconds=float(db_raw.get("busy_timeout_seconds", 10)),
    )
    telemetry = TelemetryConfig(
        path=_resolve_path(str(telemetry_raw.get("path", "./data/telemetry.db"))),
        retention_days=int(telemetry_raw.get("retention_days", 365)),
        purge_interval_seconds=int(telemetry_raw.get("purge_interval_seconds", 3600)),
    )
    if telemetry.retention_days < 1:
        raise ConfigError("telemetry.retention_days must be at least 1")

    queue = QueueConfig(
        attempts=int(queue_raw.get("attempts", 3)),
        backoff_seconds=float(queue_raw.get("backoff_seconds", 2)),
        concurrency=int(queue_raw.get("concurrency", 5)),
        auto_start=bool(queue_raw.get("auto_start", True)),
        failed_limit=int(queue_raw.get("failed_limit", 500)),
    )
    if queue.attempts < 1 or queue.concurrency < 1 or queue.failed_limit < 1:
        raise ConfigError("queue.attempts, queue.concurrency and queue.failed_limit must be positive")

    thresholds = ThresholdConfig(
        pending_min=float(thresholds_cfg.get("pending_min", 60)),
        critical_min=float(thresholds_cfg.get("critical_min", 80)),
        min_event_fill=float(thresholds_cfg.get("min_event_fill", 60)),
        route_min_fill=float(thresholds_cfg.get("route_min_fill", 60)),
        route_max_points=int(thresholds_cfg.get("route_max_points", 50)),
    )
    if not 0 <= thresholds.pending_min < thresholds.critical_min <= 100:
        raise ConfigError("Thresholds must satisfy 0 <= pending_min < critical_min <= 100")

    return AppConfig(database=database, telemetry=telemetry, queue=queue, thresholds=thresholds)

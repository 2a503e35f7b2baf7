"""Configuration loading and constants for the scheduler."""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import yaml

from .errors import ConfigError
from .extensions import CONFIG_EXTENSIONS, register_config_extension


# ---------------------------------------------------------------------------
# Status vocabularies: must match the CHECK constraints in db.init_schema()
# ---------------------------------------------------------------------------

ScheduleStatus = Literal["idle", "running", "paused", "error"]
TriggerType = Literal["task_completed", "project_completed", "status_change", "marker"]
TriggerSource = Literal["cron", "manual", "trigger"]
ExecutionStatus = Literal["running", "completed", "failed", "skipped"]
JobStatus = Literal["running", "completed", "failed"]
MissedRunPolicy = Literal["skip", "run_once"]

TRIGGER_TYPES: tuple[str, ...] = ("task_completed", "project_completed", "status_change", "marker")

DATA_DIR_NAME = ".cadence"
CONFIG_FILE_NAME = "config.yaml"
DATABASE_FILE_NAME = "state.db"

# Heartbeat cadence for the daemon's liveness record
HEARTBEAT_INTERVAL_SECONDS = 30

# Debounce window for the schedule action queue
ACTION_FLUSH_DELAY_SECONDS = 0.5

DEFAULT_AGENT_TARGET = "ceo"

DEFAULT_SETTINGS = {
    "cost_limit_daily": 50.0,
}

DEFAULT_AGENT_CONFIG = {
    "command": "claude",
    "default_target": DEFAULT_AGENT_TARGET,
}

SCHEDULER_CONFIG_DEFAULTS = {
    "enabled": True,
    "poll_interval_seconds": 30,
    "max_concurrent": 1,
    "cost_limit_per_run": 5.0,
    "missed_run_policy": "skip",
    "quiet_hours_start": None,
    "quiet_hours_end": None,
}

_HHMM_RE = re.compile(r"^\d{2}:\d{2}$")


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def get_data_dir(project_dir: Path | str) -> Path:
    """Get the .cadence directory of a project.

    Can be overridden via the CADENCE_DIR environment variable; a relative
    override is resolved against the project directory.
    """
    project_dir = Path(project_dir)
    env_override = os.environ.get("CADENCE_DIR")
    if env_override:
        override = Path(env_override)
        return override if override.is_absolute() else project_dir / override
    return project_dir / DATA_DIR_NAME


def get_config_path(project_dir: Path | str) -> Path:
    """Get path to config.yaml."""
    return get_data_dir(project_dir) / CONFIG_FILE_NAME


def get_database_path(project_dir: Path | str) -> Path:
    """Get path to the SQLite state database."""
    return get_data_dir(project_dir) / DATABASE_FILE_NAME


def get_logs_dir(project_dir: Path | str) -> Path:
    """Get the logs directory."""
    return get_data_dir(project_dir) / "logs"


def get_daemon_lock_path(project_dir: Path | str) -> Path:
    """Get path to the single-instance lock held by the daemon."""
    return get_data_dir(project_dir) / "scheduler.lock"


# ---------------------------------------------------------------------------
# Scheduler section
# ---------------------------------------------------------------------------


@dataclass
class SchedulerConfig:
    """Typed view of the ``scheduler:`` section."""

    enabled: bool = True
    poll_interval_seconds: int = 30
    max_concurrent: int = 1
    cost_limit_per_run: float = 5.0
    missed_run_policy: MissedRunPolicy = "skip"
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SchedulerConfig":
        """Create a SchedulerConfig, filling gaps from the defaults."""
        merged = {**SCHEDULER_CONFIG_DEFAULTS, **(data or {})}
        known = {k: v for k, v in merged.items() if k in SCHEDULER_CONFIG_DEFAULTS}
        return cls(**known)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_scheduler_config(raw: Any) -> list[str]:
    """Validate a raw ``scheduler:`` section.

    Returns:
        List of human-readable problems (empty when valid).
    """
    errors: list[str] = []
    if raw is None:
        return errors
    if not isinstance(raw, dict):
        return ["scheduler must be a mapping"]

    if "enabled" in raw and not isinstance(raw["enabled"], bool):
        errors.append("scheduler.enabled must be a boolean")

    if "poll_interval_seconds" in raw:
        value = raw["poll_interval_seconds"]
        if not _is_number(value) or value < 5 or value > 3600:
            errors.append("scheduler.poll_interval_seconds must be a number between 5 and 3600")

    if "max_concurrent" in raw:
        value = raw["max_concurrent"]
        if not _is_number(value) or value < 1 or value > 10:
            errors.append("scheduler.max_concurrent must be a number between 1 and 10")

    if "cost_limit_per_run" in raw:
        value = raw["cost_limit_per_run"]
        if not _is_number(value) or value < 0:
            errors.append("scheduler.cost_limit_per_run must be a non-negative number")

    if "missed_run_policy" in raw and raw["missed_run_policy"] not in ("skip", "run_once"):
        errors.append('scheduler.missed_run_policy must be "skip" or "run_once"')

    for key in ("quiet_hours_start", "quiet_hours_end"):
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not _HHMM_RE.match(value):
            errors.append(f"scheduler.{key} must be a string in HH:MM format or null")
            continue
        hours, minutes = (int(part) for part in value.split(":"))
        if hours > 23 or minutes > 59:
            errors.append(f"scheduler.{key} is not a valid time of day: {value}")

    return errors


register_config_extension("scheduler", SCHEDULER_CONFIG_DEFAULTS, validate_scheduler_config)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _validate_settings(raw: Any) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        return ["settings must be a mapping"]
    errors = []
    if "cost_limit_daily" in raw:
        value = raw["cost_limit_daily"]
        if not _is_number(value) or value < 0:
            errors.append("settings.cost_limit_daily must be a non-negative number")
    return errors


def _validate_agent(raw: Any) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, dict):
        return ["agent must be a mapping"]
    errors = []
    for key in ("command", "default_target"):
        if key in raw and (not isinstance(raw[key], str) or not raw[key].strip()):
            errors.append(f"agent.{key} must be a non-empty string")
    return errors


def _read_config_file(project_dir: Path | str) -> dict[str, Any]:
    path = get_config_path(project_dir)
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(project_dir: Path | str) -> dict[str, Any]:
    """Load config.yaml and merge it over the defaults.

    Every registered config extension contributes its defaults and its
    validator. A missing file yields the defaults.

    Raises:
        ConfigError: listing every problem found.
    """
    raw = _read_config_file(project_dir)

    errors = _validate_settings(raw.get("settings")) + _validate_agent(raw.get("agent"))
    for key, extension in CONFIG_EXTENSIONS.items():
        if extension.validate:
            errors.extend(extension.validate(raw.get(key)))
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors), errors)

    config = dict(raw)
    config["settings"] = {**DEFAULT_SETTINGS, **(raw.get("settings") or {})}
    config["agent"] = {**DEFAULT_AGENT_CONFIG, **(raw.get("agent") or {})}
    for key, extension in CONFIG_EXTENSIONS.items():
        config[key] = {**extension.defaults, **(raw.get(key) or {})}
    return config


def get_scheduler_config(config: dict[str, Any]) -> SchedulerConfig:
    """Get the typed scheduler section from a loaded config."""
    return SchedulerConfig.from_dict(config.get("scheduler"))


def get_cost_limit_daily(config: dict[str, Any]) -> float:
    """Daily spend ceiling in USD."""
    return float((config.get("settings") or {}).get("cost_limit_daily", DEFAULT_SETTINGS["cost_limit_daily"]))


def get_agent_command(config: dict[str, Any]) -> str:
    """Executable used by the worker to reach the agent service."""
    return (config.get("agent") or {}).get("command", DEFAULT_AGENT_CONFIG["command"])


def get_default_agent_target(config: dict[str, Any]) -> str:
    """Responsible agent for directives that do not name one."""
    return (config.get("agent") or {}).get("default_target", DEFAULT_AGENT_TARGET)

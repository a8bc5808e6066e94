"""Load, validate, and hot-reload the step engine configuration.

The config lives in ``engine_config.yaml`` alongside this module.  It is
loaded once and cached; call ``reload_engine_config()`` to re-read it from
disk without restarting the process.

Usage::

    from src.steps.config_loader import get_engine_config

    config = get_engine_config()
    config.sync.throttle_seconds        # 60
    config.streak.daily_goal_steps      # 5000
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger("stepsync.steps.config")

_CONFIG_PATH = Path(__file__).parent / "engine_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    throttle_seconds: float


@dataclass
class HealthPollConfig:
    enabled: bool
    interval_seconds: float


@dataclass
class StreakConfig:
    daily_goal_steps: int
    window_days: int


@dataclass
class HistoryConfig:
    days: int
    chart_days: int


@dataclass
class RealtimeConfig:
    retry_seconds: float


@dataclass
class LedgerTables:
    steps_table: str
    challenges_table: str
    assignments_table: str
    solo_assignments_table: str
    nudges_table: str


@dataclass
class EngineConfig:
    """Complete, validated engine configuration.

    Attributes:
        version:     Config schema version string.
        sync:        Outbound write throttle.
        health_poll: Platform health polling cadence.
        streak:      Streak threshold and look-back window.
        history:     In-memory history and chart sizes.
        realtime:    Change feed resubscription delay.
        ledger:      Remote table names.
    """

    version: str
    sync: SyncConfig
    health_poll: HealthPollConfig
    streak: StreakConfig
    history: HistoryConfig
    realtime: RealtimeConfig
    ledger: LedgerTables
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when engine_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Engine config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> EngineConfig:
    """Validate the raw YAML dict and construct an EngineConfig.

    Missing sections fall back to defaults; present-but-invalid values are
    collected and reported together.

    Raises:
        ConfigValidationError: If any value has the wrong type or range.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: float, name: str, minimum: float = 0) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{name}.{key} must be a number, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{name}.{key} = {number} must be >= {minimum}")
        return number

    version = str(raw.get("version", "1.0"))

    sync_raw = raw.get("sync") or {}
    sync = SyncConfig(
        throttle_seconds=_number(sync_raw, "throttle_seconds", 60, "sync"),
    )

    hp_raw = raw.get("health_poll") or {}
    health_poll = HealthPollConfig(
        enabled=bool(hp_raw.get("enabled", True)),
        interval_seconds=_number(hp_raw, "interval_seconds", 60, "health_poll", minimum=1),
    )

    st_raw = raw.get("streak") or {}
    streak = StreakConfig(
        daily_goal_steps=int(_number(st_raw, "daily_goal_steps", 5000, "streak", minimum=1)),
        window_days=int(_number(st_raw, "window_days", 30, "streak", minimum=1)),
    )

    hi_raw = raw.get("history") or {}
    history = HistoryConfig(
        days=int(_number(hi_raw, "days", 30, "history", minimum=1)),
        chart_days=int(_number(hi_raw, "chart_days", 7, "history", minimum=1)),
    )
    if history.days > 30:
        errors.append(f"history.days = {history.days} exceeds the 30-day window")

    rt_raw = raw.get("realtime") or {}
    realtime = RealtimeConfig(
        retry_seconds=_number(rt_raw, "retry_seconds", 5, "realtime"),
    )

    lg_raw = raw.get("ledger") or {}
    ledger = LedgerTables(
        steps_table=str(lg_raw.get("steps_table", "daily_steps")),
        challenges_table=str(lg_raw.get("challenges_table", "challenges")),
        assignments_table=str(lg_raw.get("assignments_table", "couple_challenges")),
        solo_assignments_table=str(lg_raw.get("solo_assignments_table", "solo_challenges")),
        nudges_table=str(lg_raw.get("nudges_table", "nudges")),
    )

    if errors:
        raise ConfigValidationError(
            f"engine_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return EngineConfig(
        version=version,
        sync=sync,
        health_poll=health_poll,
        streak=streak,
        history=history,
        realtime=realtime,
        ledger=ledger,
        _raw=raw,
    )


def load_engine_config(path: Path | None = None) -> EngineConfig:
    """Load and validate the engine config from disk.

    Args:
        path: Override path to YAML. Uses the bundled engine_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded engine config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: EngineConfig | None = None
_config_lock = threading.Lock()


def get_engine_config() -> EngineConfig:
    """Return the global EngineConfig, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_engine_config()
    return _config


def reload_engine_config(path: Path | None = None) -> EngineConfig:
    """Reload the engine config and replace the global singleton.

    If validation fails the old config is retained and the error re-raised.
    """
    global _config
    new_config = load_engine_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded engine config: %s → %s", old_version, new_config.version)
    return new_config

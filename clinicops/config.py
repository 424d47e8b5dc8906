"""Runtime settings for the reminder engine and its background jobs."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


DEFAULT_DUE_SWEEP_INTERVAL = 5 * 60  # every five minutes
DEFAULT_MEDICATION_SWEEP_INTERVAL = 5 * 60
DEFAULT_CLEANUP_INTERVAL = 24 * 60 * 60  # daily
DEFAULT_DUE_SLACK_MINUTES = 5
DEFAULT_RETENTION_DAYS = 30
DEFAULT_REMINDER_HORIZON_DAYS = 90
DEFAULT_SWEEP_BATCH_SIZE = 200


@dataclass(frozen=True)
class EngineSettings:
    """Resolved configuration for scheduling and sweeping notifications."""

    due_sweep_interval: int = DEFAULT_DUE_SWEEP_INTERVAL
    medication_sweep_interval: int = DEFAULT_MEDICATION_SWEEP_INTERVAL
    cleanup_interval: int = DEFAULT_CLEANUP_INTERVAL
    due_slack_minutes: int = DEFAULT_DUE_SLACK_MINUTES
    retention_days: int = DEFAULT_RETENTION_DAYS
    reminder_horizon_days: int = DEFAULT_REMINDER_HORIZON_DAYS
    sweep_batch_size: int = DEFAULT_SWEEP_BATCH_SIZE
    timezone: str = "UTC"

    @property
    def cleanup_enabled(self) -> bool:
        return self.retention_days > 0


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _int_setting(name: str, default: int, *, minimum: int = 0) -> int:
    value = _get_int_env(name)
    if value is None:
        return default
    return max(minimum, value)


@lru_cache(maxsize=1)
def get_engine_settings() -> EngineSettings:
    """Return the active engine settings derived from the environment."""

    return EngineSettings(
        due_sweep_interval=_int_setting(
            "CLINICOPS_DUE_SWEEP_INTERVAL", DEFAULT_DUE_SWEEP_INTERVAL, minimum=1
        ),
        medication_sweep_interval=_int_setting(
            "CLINICOPS_MEDICATION_SWEEP_INTERVAL", DEFAULT_MEDICATION_SWEEP_INTERVAL, minimum=1
        ),
        cleanup_interval=_int_setting(
            "CLINICOPS_CLEANUP_INTERVAL", DEFAULT_CLEANUP_INTERVAL, minimum=1
        ),
        due_slack_minutes=_int_setting("CLINICOPS_DUE_SLACK_MINUTES", DEFAULT_DUE_SLACK_MINUTES),
        retention_days=_int_setting("CLINICOPS_RETENTION_DAYS", DEFAULT_RETENTION_DAYS),
        reminder_horizon_days=_int_setting(
            "CLINICOPS_REMINDER_HORIZON_DAYS", DEFAULT_REMINDER_HORIZON_DAYS, minimum=1
        ),
        sweep_batch_size=_int_setting(
            "CLINICOPS_SWEEP_BATCH_SIZE", DEFAULT_SWEEP_BATCH_SIZE, minimum=1
        ),
        timezone=(os.getenv("CLINICOPS_TIMEZONE") or "UTC").strip() or "UTC",
    )


__all__ = ["EngineSettings", "get_engine_settings"]

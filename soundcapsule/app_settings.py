from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_METADATA_DIR = Path(
    os.environ.get("SOUNDCAPSULE_METADATA_DIR", REPO_ROOT / ".metadata")
)
SETTINGS_PATH = DEFAULT_METADATA_DIR / "settings.json"

STORE_POSTGRES = "postgres"
STORE_MEMORY = "memory"


@dataclass(frozen=True)
class AnalyticsSettings:
    """Resolved knobs for the listening analytics pipeline."""

    timezone: str = "UTC"
    progress_guard_ms: int = 5000
    persist_interval_ms: int = 10000
    boundary_interval_ms: int = 30000
    boundary_window_ms: int = 1000
    queue_size: int = 1000
    flush_timeout_seconds: float = 10.0
    streak_retention_days: int = 30
    cleanup_interval_hours: float = 24.0
    store_backend: str = STORE_POSTGRES


def _default_settings() -> dict[str, Any]:
    return {
        "analytics": {
            "timezone": "UTC",
            "progress_guard_ms": 5000,
            "persist_interval_ms": 10000,
            "boundary_interval_ms": 30000,
            "boundary_window_ms": 1000,
            "queue_size": 1000,
            "flush_timeout_seconds": 10.0,
        },
        "retention": {
            "streak_days": 30,
            "cleanup_interval_hours": 24.0,
        },
        "store": {
            "backend": STORE_POSTGRES,
        },
    }


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _deep_merge(base[key], value)
        else:
            merged[key] = value
    return merged


def load_settings() -> dict[str, Any]:
    defaults = _default_settings()
    if not SETTINGS_PATH.exists():
        return defaults
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return defaults
    if not isinstance(data, dict):
        return defaults
    return _deep_merge(defaults, data)


def _section(settings: dict[str, Any], name: str) -> dict[str, Any]:
    section = settings.get(name) if isinstance(settings, dict) else None
    return section if isinstance(section, dict) else {}


def load_analytics_settings(settings: dict[str, Any] | None = None) -> AnalyticsSettings:
    """Build AnalyticsSettings from the settings file, with env overrides."""
    if settings is None:
        settings = load_settings()
    analytics = _section(settings, "analytics")
    retention = _section(settings, "retention")
    store = _section(settings, "store")
    defaults = AnalyticsSettings()

    return AnalyticsSettings(
        timezone=os.environ.get("SOUNDCAPSULE_TIMEZONE")
        or str(analytics.get("timezone") or defaults.timezone),
        progress_guard_ms=int(analytics.get("progress_guard_ms", defaults.progress_guard_ms)),
        persist_interval_ms=int(
            analytics.get("persist_interval_ms", defaults.persist_interval_ms)
        ),
        boundary_interval_ms=int(
            analytics.get("boundary_interval_ms", defaults.boundary_interval_ms)
        ),
        boundary_window_ms=int(
            analytics.get("boundary_window_ms", defaults.boundary_window_ms)
        ),
        queue_size=int(analytics.get("queue_size", defaults.queue_size)),
        flush_timeout_seconds=float(
            analytics.get("flush_timeout_seconds", defaults.flush_timeout_seconds)
        ),
        streak_retention_days=int(retention.get("streak_days", defaults.streak_retention_days)),
        cleanup_interval_hours=float(
            retention.get("cleanup_interval_hours", defaults.cleanup_interval_hours)
        ),
        store_backend=(
            os.environ.get("SOUNDCAPSULE_STORE")
            or str(store.get("backend") or defaults.store_backend)
        ).lower(),
    )

"""Configuration management for the coordination service."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

_ENV_PREFIX = "CROWDAID_"
_ENV_FIELDS = {
    "DB_PATH": "database_path",
    "DEFAULT_RADIUS_KM": "default_radius_km",
    "MAX_RADIUS_KM": "max_radius_km",
    "SESSION_QUEUE_SIZE": "session_queue_size",
    "LOG_LEVEL": "log_level",
}
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "crowdaid.sqlite3").resolve(strict=False)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API, the proximity search and the router."""

    database_path: Path
    default_radius_km: float = 10.0
    max_radius_km: Optional[float] = None
    session_queue_size: int = 256
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.default_radius_km <= 0:
            raise ValueError("default_radius_km must be positive")
        if self.max_radius_km is not None and self.max_radius_km < self.default_radius_km:
            raise ValueError("max_radius_km must not be smaller than default_radius_km")
        if self.session_queue_size < 1:
            raise ValueError("session_queue_size must be at least 1")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level '{self.log_level}'")

    @staticmethod
    def from_dict(data: Mapping[str, object], *, base: "Settings | None" = None) -> "Settings":
        """Overlay raw values onto ``base`` (or the defaults)."""

        current = base or Settings(database_path=resolve_database_path(None))
        known = {item.name for item in fields(Settings)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        updates: Dict[str, object] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key == "database_path":
                updates[key] = resolve_database_path(str(value))
            elif key in {"default_radius_km", "max_radius_km"}:
                updates[key] = float(value)  # type: ignore[arg-type]
            elif key == "session_queue_size":
                updates[key] = int(value)  # type: ignore[arg-type]
            else:
                updates[key] = str(value).strip().upper()
        return replace(current, **updates)


def load_settings(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from defaults, an optional YAML file and the environment."""

    env = os.environ if environ is None else environ
    settings = Settings(database_path=resolve_database_path(None))

    path = config_path
    if path is None and env.get(f"{_ENV_PREFIX}CONFIG"):
        path = Path(env[f"{_ENV_PREFIX}CONFIG"]).expanduser()
    if path is not None:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        settings = Settings.from_dict(raw, base=settings)

    overrides = {
        field_name: env[f"{_ENV_PREFIX}{suffix}"]
        for suffix, field_name in _ENV_FIELDS.items()
        if env.get(f"{_ENV_PREFIX}{suffix}")
    }
    if overrides:
        settings = Settings.from_dict(overrides, base=settings)
    return settings


__all__ = ["Settings", "load_settings", "resolve_database_path"]

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import tzinfo
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from tracklog.errors import ConfigError

CONFIG_ENV = "TRACKLOG_CONFIG"


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path(".tracklog")
    secret_key: str = ""
    https_only: bool = False
    allowed_hosts: tuple[str, ...] = ("localhost", "127.0.0.1")
    trusted_proxies: tuple[str, ...] | str = ("127.0.0.1",)
    admin_user: str = "admin"
    admin_password: str = "admin1234"
    webhook_url: str = ""
    timezone: str = "UTC"
    stale_marker_hours: float = 24.0
    tick_seconds: float = 1.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / "tracklog.sqlite3"

    @property
    def tz(self) -> tzinfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: {self.timezone}") from e


def _as_bool(value: Any) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: Any, *, name: str) -> float:
    try:
        return float(str(value).strip())
    except ValueError as e:
        raise ConfigError(f"{name} must be a number.") from e


def parse_allowed_hosts(raw: str) -> tuple[str, ...]:
    parts = [p.strip() for p in str(raw or "").split(",") if p.strip()]
    out = tuple(p for p in parts if p != "*")
    return out or ("localhost", "127.0.0.1")


def parse_trusted_proxies(raw: str) -> tuple[str, ...] | str:
    text = str(raw or "").strip()
    if text == "*":
        return "*"
    out = tuple(x.strip() for x in text.split(",") if x.strip())
    return out or ("127.0.0.1",)


def resolve_data_dir(raw: str | Path, *, base: Path | None = None) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = ((base or Path.cwd()) / p).resolve()
    return p


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping (YAML dict).")
    return raw


def _apply(settings: Settings, values: Mapping[str, Any], *, base: Path | None) -> Settings:
    changes: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if key == "data_dir":
            changes[key] = resolve_data_dir(str(value), base=base)
        elif key == "https_only":
            changes[key] = _as_bool(value)
        elif key == "allowed_hosts":
            text = ",".join(value) if isinstance(value, (list, tuple)) else str(value)
            changes[key] = parse_allowed_hosts(text)
        elif key == "trusted_proxies":
            text = ",".join(value) if isinstance(value, (list, tuple)) else str(value)
            changes[key] = parse_trusted_proxies(text)
        elif key in {"stale_marker_hours", "tick_seconds"}:
            changes[key] = _as_float(value, name=key)
        elif key in {"secret_key", "admin_user", "admin_password", "webhook_url", "timezone"}:
            changes[key] = str(value).strip()
        else:
            raise ConfigError(f"Unknown config key: {key}")
    return replace(settings, **changes)


_ENV_KEYS = {
    "TRACKLOG_DATA_DIR": "data_dir",
    "TRACKLOG_SECRET_KEY": "secret_key",
    "TRACKLOG_HTTPS_ONLY": "https_only",
    "TRACKLOG_ALLOWED_HOSTS": "allowed_hosts",
    "TRACKLOG_TRUSTED_PROXIES": "trusted_proxies",
    "TRACKLOG_ADMIN_USER": "admin_user",
    "TRACKLOG_ADMIN_PASSWORD": "admin_password",
    "TRACKLOG_WEBHOOK_URL": "webhook_url",
    "TRACKLOG_TIMEZONE": "timezone",
    "TRACKLOG_STALE_MARKER_HOURS": "stale_marker_hours",
    "TRACKLOG_TICK_SECONDS": "tick_seconds",
}


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Defaults, then the YAML file named by TRACKLOG_CONFIG, then TRACKLOG_* variables."""
    env = os.environ if env is None else env
    settings = Settings(data_dir=resolve_data_dir(".tracklog"))

    config_path = (env.get(CONFIG_ENV, "") or "").strip()
    if config_path:
        path = Path(config_path)
        settings = _apply(settings, load_config_file(path), base=path.resolve().parent)

    from_env = {attr: env[name] for name, attr in _ENV_KEYS.items() if (env.get(name) or "").strip()}
    settings = _apply(settings, from_env, base=None)

    if settings.stale_marker_hours < 0:
        raise ConfigError("stale_marker_hours must not be negative.")
    if settings.tick_seconds <= 0:
        raise ConfigError("tick_seconds must be positive.")
    settings.tz  # raises ConfigError for unknown zone names
    return settings

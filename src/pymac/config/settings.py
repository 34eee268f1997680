"""Persist and load client settings, with environment overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from pymac.models import FriendsApiUsage


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "pymac"
DEFAULT_SETTINGS_PATH = DEFAULT_CONFIG_DIR / "settings.json"

_API_KEY_ENV = "PYMAC_STEAM_API_KEY"
_DB_PATH_ENV = "PYMAC_DB_PATH"
_FETCH_CONCURRENCY_ENV = "PYMAC_FETCH_CONCURRENCY"
_FETCH_RATE_ENV = "PYMAC_FETCH_RATE"
_FETCH_TIMEOUT_ENV = "PYMAC_FETCH_TIMEOUT"


def _env_float(name: str, default: float, *, clamp_min: float | None = None, clamp_max: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid float for %s: %s; using default %.2f", name, raw, default)
        return default
    if clamp_min is not None:
        value = max(clamp_min, value)
    if clamp_max is not None:
        value = min(clamp_max, value)
    return value


def _env_int(name: str, default: int, *, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid int for %s: %s; using default %d", name, raw, default)
        return default
    if min_value is not None:
        value = max(min_value, value)
    return value


class SettingsError(ValueError):
    """Raised when an existing settings file cannot be used."""


@dataclass
class Settings:
    steam_api_key: Optional[str] = None
    self_steam_id: Optional[int] = None
    console_log: Optional[Path] = None
    db_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_DIR / "verdicts.sqlite")
    port: int = 3621
    fetch_concurrency: int = 4
    fetch_rate: float = 2.0
    fetch_timeout: float = 10.0
    retry_cooldown: float = 30.0
    friends_api_usage: str = FriendsApiUsage.CHEATERS_ONLY.value

    @property
    def has_api_key(self) -> bool:
        return bool(self.steam_api_key and self.steam_api_key.strip())

    @classmethod
    def load(cls, path: Path) -> "Settings":
        """Read settings from ``path``; a missing file yields defaults.

        Raises :class:`SettingsError` when the file exists but cannot be read
        or does not hold a JSON object.
        """

        if not path.exists():
            logger.info("No settings file at %s, using defaults", path)
            return cls().with_env_overrides()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            raise SettingsError(f"Cannot read settings file {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise SettingsError(f"Settings file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise SettingsError(f"Settings file {path} must contain a JSON object")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown settings keys in %s: %s", path, ", ".join(unknown))
        values = {key: value for key, value in data.items() if key in known}
        for key in ("console_log", "db_path"):
            if values.get(key):
                values[key] = Path(values[key])
            else:
                values.pop(key, None)
        if "friends_api_usage" in values:
            try:
                values["friends_api_usage"] = FriendsApiUsage.parse(values["friends_api_usage"]).value
            except ValueError:
                logger.warning(
                    "Invalid friends_api_usage %r in %s; using %s",
                    values.pop("friends_api_usage"),
                    path,
                    FriendsApiUsage.CHEATERS_ONLY.value,
                )
        return cls(**values).with_env_overrides()

    def save(self, path: Path) -> None:
        payload = asdict(self)
        for key in ("console_log", "db_path"):
            if payload[key] is not None:
                payload[key] = str(payload[key])
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def with_env_overrides(self) -> "Settings":
        api_key = os.getenv(_API_KEY_ENV)
        if api_key is not None:
            self.steam_api_key = api_key or None
        db_path = os.getenv(_DB_PATH_ENV)
        if db_path:
            self.db_path = Path(db_path)
        self.fetch_concurrency = _env_int(_FETCH_CONCURRENCY_ENV, self.fetch_concurrency, min_value=1)
        self.fetch_rate = _env_float(_FETCH_RATE_ENV, self.fetch_rate, clamp_min=0.1)
        self.fetch_timeout = _env_float(_FETCH_TIMEOUT_ENV, self.fetch_timeout, clamp_min=0.5)
        return self

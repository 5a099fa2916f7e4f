from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_config_path, user_data_path

from .errors import ConfigError

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_DOWNLOAD_TIMEOUT_S = 60.0

APP_NAME = "skillgate"
CONFIG_FILENAME = "config.json"
CONFIG_PATH_VAR = "SKILLGATE_CONFIG_PATH"

# Config field -> environment variable. Env overrides the config file.
ENV_VARS = {
    "api_url": "SKILLGATE_API_URL",
    "download_url": "SKILLGATE_DOWNLOAD_URL",
    "api_key": "SKILLGATE_API_KEY",
    "timeout_s": "SKILLGATE_TIMEOUT_S",
    "home": "SKILLGATE_HOME",
    "npm_registry": "SKILLGATE_NPM_REGISTRY",
}
REQUIRED_REMOTE_FIELDS = ("api_url", "download_url", "api_key")


def default_home() -> Path:
    return user_data_path(APP_NAME)


@dataclass(frozen=True)
class Config:
    api_url: str | None = None
    download_url: str | None = None
    api_key: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    download_timeout_s: float = DEFAULT_DOWNLOAD_TIMEOUT_S
    npm_registry: str | None = None
    home: Path = field(default_factory=default_home)

    def missing_remote(self) -> list[str]:
        return [ENV_VARS[name] for name in REQUIRED_REMOTE_FIELDS if not getattr(self, name)]

    def require_remote(self) -> "Config":
        """
        Fail fast when any of the values needed to talk to the license or download
        service is unset. The error names every missing variable, not just the first.
        """
        missing = self.missing_remote()
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        return self


def config_path(
    path_override: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Path:
    env = os.environ if environ is None else environ
    chosen = path_override or env.get(CONFIG_PATH_VAR)
    if chosen:
        return Path(chosen).expanduser()
    return user_config_path(APP_NAME) / CONFIG_FILENAME


def _load_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(raw, dict):
        return {}
    return raw


def _as_float(value: Any, default: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) and parsed > 0 else default


def load_config(
    path_override: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Config:
    env = os.environ if environ is None else environ
    raw = _load_file(config_path(path_override, environ=env))

    allowed = {f for f in Config.__dataclass_fields__}  # type: ignore[attr-defined]
    values: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    for name, var in ENV_VARS.items():
        value = env.get(var)
        if value:
            values[name] = value

    if "timeout_s" in values:
        values["timeout_s"] = _as_float(values["timeout_s"], DEFAULT_TIMEOUT_S)
    if "download_timeout_s" in values:
        values["download_timeout_s"] = _as_float(values["download_timeout_s"], DEFAULT_DOWNLOAD_TIMEOUT_S)
    if "home" in values:
        values["home"] = Path(values["home"]).expanduser()
    return Config(**values)


def with_overrides(cfg: Config, *, home: str | None = None, timeout_s: float | None = None) -> Config:
    # CLI flags override both the file and the environment.
    changes: dict[str, Any] = {}
    if home:
        changes["home"] = Path(home).expanduser()
    if timeout_s is not None:
        changes["timeout_s"] = float(timeout_s)
    return replace(cfg, **changes) if changes else cfg


def redact_secret(secret: str | None, *, visible: int = 4) -> str | None:
    # Short secrets are masked entirely.
    if not secret:
        return secret
    if len(secret) <= 2 * visible:
        return "*" * len(secret)
    return f"{secret[:visible]}...{secret[-visible:]}"

"""Runtime settings for scaffoldkit."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from scaffoldkit import __version__
from scaffoldkit.domain.errors import ValidationError

DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_LOCK_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class RuntimeSettings:
    home_dir: Path
    cache_dir: Path
    state_dir: Path
    log_dir: Path
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    cli_version: str = __version__

    @property
    def user_config_file(self) -> Path:
        return self.home_dir / "config.yaml"


def _default_home_dir(env: Mapping[str, str]) -> Path:
    override = env.get("SCAFFOLDKIT_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".scaffoldkit"


def _ttl_from_env(env: Mapping[str, str]) -> int:
    raw = env.get("SCAFFOLDKIT_CACHE_TTL")
    if raw is None or raw == "":
        return DEFAULT_CACHE_TTL_SECONDS
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(
            f"SCAFFOLDKIT_CACHE_TTL must be an integer number of seconds, got {raw!r}",
            field="SCAFFOLDKIT_CACHE_TTL",
        ) from exc
    if value < 0:
        raise ValidationError("SCAFFOLDKIT_CACHE_TTL must not be negative", field="SCAFFOLDKIT_CACHE_TTL")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> RuntimeSettings:
    env = os.environ if env is None else env
    base = _default_home_dir(env)
    return RuntimeSettings(
        home_dir=base,
        cache_dir=base / "cache",
        state_dir=base / "state",
        log_dir=base / "logs",
        cache_ttl_seconds=_ttl_from_env(env),
    )


__all__ = ["RuntimeSettings", "load_settings", "DEFAULT_CACHE_TTL_SECONDS"]

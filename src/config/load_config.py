from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


REPO_ROOT = Path(__file__).resolve().parents[2]


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_non_negative_int(value: Any, *, key: str) -> int:
    n = _as_int(value, key=key)
    if n < 0:
        raise ConfigError(f"Invalid {key}: must be >= 0, got {n}")
    return n


def _as_str_list(value: Any, *, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"Invalid list for {key}: {value!r}")
    items = [str(v).strip() for v in value]
    if any(not s for s in items):
        raise ConfigError(f"Invalid {key}: empty job type")
    return tuple(items)


@dataclass(frozen=True)
class RunnerConfig:
    tick_rate_ms: int


@dataclass(frozen=True)
class JobsConfig:
    max_retries: int
    # Empty means: any type with a registered handler.
    allowed_types: tuple[str, ...]


@dataclass(frozen=True)
class APIConfig:
    list_default_limit: int
    list_max_limit: int


@dataclass(frozen=True)
class AppConfig:
    runner: RunnerConfig
    jobs: JobsConfig
    api: APIConfig


def default_config_path() -> Path:
    raw = os.getenv("JOBRUNNER_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    return REPO_ROOT / "config" / "default.toml"


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except ImportError as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    runner = raw.get("runner", {})
    jobs = raw.get("jobs", {})
    api = raw.get("api", {})

    list_default_limit = _as_int(api.get("list_default_limit", 50), key="api.list_default_limit")
    list_max_limit = _as_int(api.get("list_max_limit", 200), key="api.list_max_limit")
    if list_default_limit < 1 or list_default_limit > list_max_limit:
        raise ConfigError(
            f"Invalid api.list_default_limit: must be in [1..{list_max_limit}], got {list_default_limit}"
        )

    return AppConfig(
        runner=RunnerConfig(
            tick_rate_ms=_as_non_negative_int(runner.get("tick_rate_ms", 5000), key="runner.tick_rate_ms"),
        ),
        jobs=JobsConfig(
            max_retries=_as_non_negative_int(jobs.get("max_retries", 3), key="jobs.max_retries"),
            allowed_types=_as_str_list(jobs.get("allowed_types"), key="jobs.allowed_types"),
        ),
        api=APIConfig(
            list_default_limit=list_default_limit,
            list_max_limit=list_max_limit,
        ),
    )

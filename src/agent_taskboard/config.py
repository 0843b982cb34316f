"""Load server settings from an optional YAML file and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from .constants import (
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_WORKFLOW_MAX_AGE_MS,
    ENV_CONFIG,
    ENV_DATA_DIR,
    ENV_LEGACY_DATA_DIR,
    ENV_LOCK_TIMEOUT,
    ENV_LOG_FILE,
    ENV_LOG_LEVEL,
    ENV_PROJECT_ROOT,
    ENV_WORKFLOW_MAX_AGE_MS,
    ENV_WORKFLOW_SWEEP_INTERVAL,
)
from .errors import ValidationError


@dataclass(frozen=True)
class Settings:
    """Process-wide settings. Per-project state never lives here."""

    data_dir: Optional[str] = None
    project_root: Optional[str] = None
    fallback_root: Path = field(default_factory=Path.cwd)
    lock_timeout_seconds: Optional[float] = DEFAULT_LOCK_TIMEOUT
    workflow_sweep_interval_seconds: float = 0.0
    workflow_max_age_ms: int = DEFAULT_WORKFLOW_MAX_AGE_MS
    log_level: str = "INFO"
    log_file: Optional[str] = None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def load_config_file(path: Path) -> tuple[dict[str, Any], Optional[str]]:
    """Load the YAML config file.

    Returns ``(config, error_message)``. A missing file yields ``({}, None)``.
    """
    if not path.exists():
        return {}, None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        return {}, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except yaml.YAMLError as exc:
        return {}, f"{path.name}: YAMLError: {exc}"
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return {}, f"{path.name}: expected mapping, got {type(data).__name__}"
    return data, None


def _as_float(key: str, raw: Any, *, allow_none: bool = False) -> Optional[float]:
    if raw is None or (isinstance(raw, str) and raw.strip().lower() in {"", "none", "off"}):
        if allow_none:
            return None
        raise ValidationError(f"'{key}' must be a number", field=key, current=raw)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be a number", field=key, current=raw) from None
    if value < 0:
        raise ValidationError(f"'{key}' must be >= 0", field=key, current=raw)
    return value


def _settings_from_mapping(base: Settings, config: dict[str, Any]) -> Settings:
    changes: dict[str, Any] = {}
    for key in ("data_dir", "project_root", "log_level", "log_file"):
        value = config.get(key)
        if value is not None:
            changes[key] = str(value)
    if config.get("fallback_root"):
        changes["fallback_root"] = Path(str(config["fallback_root"]))
    if "lock_timeout_seconds" in config:
        changes["lock_timeout_seconds"] = _as_float(
            "lock_timeout_seconds", config["lock_timeout_seconds"], allow_none=True
        )
    interval = _get_nested(config, "workflow", "sweep_interval_seconds")
    if interval is not None:
        changes["workflow_sweep_interval_seconds"] = _as_float("workflow.sweep_interval_seconds", interval)
    max_age = _get_nested(config, "workflow", "max_age_ms")
    if max_age is not None:
        changes["workflow_max_age_ms"] = int(_as_float("workflow.max_age_ms", max_age) or 0)
    return replace(base, **changes)


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build :class:`Settings` from the config file, then environment overrides."""
    env = os.environ if environ is None else environ
    settings = Settings()

    path = config_path or (Path(env[ENV_CONFIG]) if env.get(ENV_CONFIG) else None)
    if path is not None:
        config, err = load_config_file(path)
        if err:
            raise ValidationError(f"Invalid config file: {err}", field="config", current=str(path))
        settings = _settings_from_mapping(settings, config)

    changes: dict[str, Any] = {}
    data_dir = env.get(ENV_DATA_DIR) or env.get(ENV_LEGACY_DATA_DIR)
    if data_dir:
        changes["data_dir"] = data_dir
    if env.get(ENV_PROJECT_ROOT):
        changes["project_root"] = env[ENV_PROJECT_ROOT]
    if ENV_LOCK_TIMEOUT in env:
        changes["lock_timeout_seconds"] = _as_float(ENV_LOCK_TIMEOUT, env[ENV_LOCK_TIMEOUT], allow_none=True)
    if env.get(ENV_WORKFLOW_SWEEP_INTERVAL):
        changes["workflow_sweep_interval_seconds"] = _as_float(
            ENV_WORKFLOW_SWEEP_INTERVAL, env[ENV_WORKFLOW_SWEEP_INTERVAL]
        )
    if env.get(ENV_WORKFLOW_MAX_AGE_MS):
        changes["workflow_max_age_ms"] = int(_as_float(ENV_WORKFLOW_MAX_AGE_MS, env[ENV_WORKFLOW_MAX_AGE_MS]) or 0)
    if env.get(ENV_LOG_LEVEL):
        changes["log_level"] = env[ENV_LOG_LEVEL]
    if env.get(ENV_LOG_FILE):
        changes["log_file"] = env[ENV_LOG_FILE]
    return replace(settings, **changes)

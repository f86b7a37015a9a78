from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError
from .retry import RetryConfig

# Environment variables that take precedence over the YAML file.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "TASTE_INDEX_DB": ("store", "path"),
    "TASTE_INDEX_GATEWAY": ("content", "gateway"),
}


def _read_mapping(p: Path) -> dict[str, Any]:
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")
    return data


def _apply_env(data: dict[str, Any], env: Mapping[str, str], p: Path) -> dict[str, Any]:
    out = dict(data)
    for var, (section, key) in ENV_OVERRIDES.items():
        value = (env.get(var) or "").strip()
        if not value:
            continue
        current = out.get(section) or {}
        if not isinstance(current, dict):
            raise ConfigError(f"Section '{section}' in {p} must be a mapping to apply {var}")
        out[section] = {**current, key: value}
    return out


def load_config(path: str | Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    """
    Load the YAML config, apply TASTE_INDEX_* environment overrides, and validate.

    An empty file yields all defaults. Every failure is a ConfigError whose message
    lists one line per invalid field.
    """
    p = Path(path)
    env = os.environ if environ is None else environ
    data = _apply_env(_read_mapping(p), env, p)

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e


def retry_config(config: AppConfig) -> RetryConfig:
    r = config.retry
    return RetryConfig(
        max_attempts=int(r.max_attempts),
        base_delay_seconds=float(r.base_delay_seconds),
        max_delay_seconds=float(r.max_delay_seconds),
        jitter_ratio=float(r.jitter_ratio),
    )


def config_sha256(config: AppConfig) -> str:
    """Stable hash of the effective config, recorded in run logs and exports."""
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        lines.append(f"- {loc}: {item.get('msg', 'invalid value')}")
    return "\n".join(lines)

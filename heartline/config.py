"""
Heartline configuration.

Two files:

  config.yaml          read once at startup. String values may reference the
                       environment (and .env) as ${VAR} or ${VAR:-fallback}.
  runtime_config.yaml  operator overrides under a `runtime:` key, re-read
                       whenever its mtime changes so they apply to the next
                       exchange without a restart.

The relay never reads the raw runtime dict. It asks get_runtime_overrides()
for a RuntimeOverrides, where every value has already been checked: a value
of the wrong type is logged once and treated as unset.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"
_RUNTIME_CONFIG_PATH = Path(__file__).parent.parent / "runtime_config.yaml"

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_config: dict | None = None

# Runtime overrides hot-reload state
_runtime_config: dict = {}
_runtime_mtime: float = 0.0
_overrides: RuntimeOverrides | None = None
_overrides_source: dict | None = None


@dataclass(frozen=True)
class RuntimeOverrides:
    """Validated operator overrides for the next exchange. None = not set."""

    force_model: str | None = None
    history_limit: int | None = None

    @classmethod
    def from_raw(cls, raw: dict) -> "RuntimeOverrides":
        return cls(
            force_model=_model_override(raw.get("force_model")),
            history_limit=_limit_override(raw.get("history_limit")),
        )


def _model_override(value) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        logger.warning("runtime force_model must be a model id, ignoring %r", value)
        return None
    return value.strip() or None


def _limit_override(value) -> int | None:
    if value is None:
        return None
    # YAML turns `yes` into True; bool is an int subclass
    if isinstance(value, bool):
        logger.warning("runtime history_limit must be a whole number, ignoring %r", value)
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        logger.warning("runtime history_limit must be a whole number >= 0, ignoring %r", value)
        return None
    return value


def _resolve_env_vars(value: str) -> str:
    """Replace ${VAR} and ${VAR:-fallback} with the environment value."""
    def replacer(match):
        name, fallback = match.group(1), match.group(2)
        resolved = os.environ.get(name, "")
        if not resolved and fallback is not None:
            return fallback
        return resolved
    return _ENV_REF.sub(replacer, value)


def _walk_and_resolve(obj):
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    if isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml (or `path`) once and cache it."""
    global _config
    if _config is not None:
        return _config

    config_path = path or _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(raw)
    return _config


def get_config() -> dict:
    if _config is None:
        return load_config()
    return _config


def get_runtime_config() -> dict:
    """
    The raw `runtime:` mapping, re-read if the file changed since last call.
    Missing file = {}. An unreadable or malformed file keeps the last good copy.
    """
    global _runtime_config, _runtime_mtime

    if not _RUNTIME_CONFIG_PATH.exists():
        return {}

    try:
        mtime = _RUNTIME_CONFIG_PATH.stat().st_mtime
    except OSError:
        return _runtime_config

    if mtime == _runtime_mtime:
        return _runtime_config

    try:
        with open(_RUNTIME_CONFIG_PATH) as f:
            data = yaml.safe_load(f) or {}
        runtime = data.get("runtime") or {}
        if not isinstance(runtime, dict):
            raise yaml.YAMLError(f"`runtime` must be a mapping, got {type(runtime).__name__}")
        _runtime_config = runtime
        _runtime_mtime = mtime
        logger.info("Runtime overrides loaded: %s", _runtime_config or "none")
    except (OSError, AttributeError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable %s: %s", _RUNTIME_CONFIG_PATH, e)

    return _runtime_config


def get_runtime_overrides() -> RuntimeOverrides:
    """Typed view of get_runtime_config(), re-validated only when it reloads."""
    global _overrides, _overrides_source
    raw = get_runtime_config()
    if _overrides is None or raw is not _overrides_source:
        _overrides = RuntimeOverrides.from_raw(raw)
        _overrides_source = raw
    return _overrides

"""Configuration loading for the FutsalDex service.

Layered lookup:
1. Explicit path argument (highest precedence)
2. Environment variable FUTSALDEX_CONFIG
3. Fallback to "config/default.yaml"

Values can be overridden from environment variables with prefix
``FUTSALDEX__`` (e.g., FUTSALDEX__CHAT__HISTORY_LIMIT=10).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "FUTSALDEX__"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "store": {"backend": "memory", "data_dir": "data"},
    "generator": {
        "provider": "gemini",
        "model": "gemini-2.0-flash",
        "timeout": 60.0,
    },
    "chat": {
        "collection": "support_chats",
        "history_limit": 0,
    },
    "cache": {"exercises_ttl": 300},
    "exercises": {"collection": "ejercicios_futsal"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix FUTSALDEX__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., FUTSALDEX__STORE__BACKEND -> cfg["store"]["backend"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the service.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``FUTSALDEX_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults, overlaid with the file contents and then with
        environment overrides.
    """
    if path is None:
        path = os.environ.get("FUTSALDEX_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s, using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))

from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_DEFAULT_CFG_PATH = Path(__file__).parent / "config" / "config.yml"

# environment variable -> (section, key, cast); section None means top level
_ENV_OVERRIDES = {
    "BROKER_ADDRESS": ("broker", "address", str),
    "BROKER_USER": ("broker", "user", str),
    "BROKER_PASSWORD": ("broker", "password", str),
    "BROKER_SECRET": ("broker", "secret", str),
    "VOICENODE_HOTWORD": (None, "hotword", str),
    "VOICENODE_MODEL_PATH": ("recognition", "model_path", str),
    "VOICENODE_HOST": ("server", "host", str),
    "VOICENODE_PORT": ("server", "port", int),
}


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k] = _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_config(path: str | os.PathLike | None = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load YAML config for the speech node.

    Priority (highest last):
    1. default config.yml in module (or the given path / VOICENODE_CONFIG)
    2. environment variables (BROKER_*, VOICENODE_*)
    3. ``overrides`` (CLI flags); None values are ignored
    """
    cfg_path = Path(path) if path else Path(os.getenv("VOICENODE_CONFIG", _DEFAULT_CFG_PATH))
    if not cfg_path.exists():
        cfg_path = _DEFAULT_CFG_PATH
    with open(cfg_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    env: Dict[str, Any] = {}
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        value = os.getenv(var)
        if not value:
            continue
        target = env.setdefault(section, {}) if section else env
        target[key] = cast(value)
    data = _deep_update(data, env)

    if overrides:
        data = _deep_update(data, _drop_none(overrides))
    return data


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in values.items():
        if isinstance(v, dict):
            v = _drop_none(v)
            if not v:
                continue
        elif v is None:
            continue
        out[k] = v
    return out

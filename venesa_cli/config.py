"""
Configuration for the Venesa assistant.

Secrets (API keys) live in ``~/.venesa/.env``; everything else lives in
``~/.venesa/config.yaml``. The YAML file is deep-merged over DEFAULT_CONFIG so
a partial file only overrides what it mentions.

Usage:
    from venesa_cli.config import load_config

    config = load_config()
    timeout = config["shell"]["command_timeout"]
"""

import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from venesa_constants import DEFAULT_MODEL, GEMINI_OPENAI_BASE_URL, RATE_LIMIT_COOLDOWN_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "model": {
        "name": DEFAULT_MODEL,
        "base_url": GEMINI_OPENAI_BASE_URL,
        "timeout": 30.0,
        "max_history_turns": 20,
    },
    "user": {
        "name": "",
    },
    "shell": {
        # auto | powershell | bash
        "dialect": "auto",
        "command_timeout": 30.0,
        "respawn_delay": 1.0,
    },
    "actions": {
        "search_max_results": 30,
        "search_max_depth": 4,
    },
    "key_pool": {
        "cooldown_seconds": RATE_LIMIT_COOLDOWN_SECONDS,
    },
    "speech": {
        "voice_id": "EXAVITQu4vr4xnSDxMaL",
        "tts_model": "eleven_turbo_v2_5",
        "stt_model": "scribe_v1",
        "language": "en",
        "timeout": 30.0,
    },
}


def get_venesa_home() -> Path:
    """Return the Venesa home directory (respects VENESA_HOME)."""
    return Path(os.getenv("VENESA_HOME", Path.home() / ".venesa"))


def get_config_path() -> Path:
    return get_venesa_home() / "config.yaml"


def get_env_path() -> Path:
    return get_venesa_home() / ".env"


def get_logs_dir() -> Path:
    return get_venesa_home() / "logs"


def ensure_venesa_home() -> Path:
    """Create the home directory (and logs/) if missing and return it."""
    home = get_venesa_home()
    (home / "logs").mkdir(parents=True, exist_ok=True)
    return home


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load config.yaml merged over the defaults.

    A missing or unreadable file is not an error: the defaults are returned
    and the problem is logged.
    """
    config_path = Path(path) if path else get_config_path()
    defaults = deepcopy(DEFAULT_CONFIG)
    if not config_path.exists():
        return defaults

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s, using defaults: %s", config_path, e)
        return defaults

    if not isinstance(raw, dict):
        logger.warning("Ignoring %s: top level must be a mapping", config_path)
        return defaults

    return _merge_dicts(defaults, raw)


def save_config(config: Dict[str, Any], path: Optional[Path] = None) -> Path:
    """Write *config* to config.yaml (write to a temp file, then rename)."""
    config_path = Path(path) if path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = config_path.with_suffix(".yaml.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
    os.replace(tmp_path, config_path)
    return config_path


def get_env_value(name: str, default: Optional[str] = None) -> Optional[str]:
    """Read a value from the process environment, falling back to ~/.venesa/.env."""
    value = os.environ.get(name)
    if value:
        return value

    env_path = get_env_path()
    if env_path.exists():
        from dotenv import dotenv_values

        value = dotenv_values(env_path).get(name)
        if value:
            return value
    return default

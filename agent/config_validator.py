"""Configuration validation utilities.

Checks the environment before starting the assistant: which services have
API keys, whether VENESA_HOME and config.yaml exist, and which shell the
session will spawn. Nothing here contacts the network.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from agent.key_pool import load_keys_from_env
from venesa_cli.config import get_config_path, get_env_path, get_venesa_home, load_config
from venesa_constants import KEY_POOL_SERVICES

logger = logging.getLogger(__name__)

# Services the assistant cannot work without.
REQUIRED_SERVICES = ("gemini",)


def validate_api_keys(env_path: Optional[Path] = None) -> List[Tuple[str, bool, str]]:
    """Count configured keys per service.

    Returns:
        List of (env_prefix, is_set, message) tuples
    """
    env_path = env_path or get_env_path()
    results = []
    for service, prefix in KEY_POOL_SERVICES.items():
        count = len(load_keys_from_env(prefix, env_path))
        if count:
            results.append((prefix, True, f"{service}: {count} key(s) configured"))
        elif service in REQUIRED_SERVICES:
            results.append((prefix, False, f"{service}: not set"))
        else:
            results.append((prefix, False, f"{service}: not set (optional, speech disabled)"))
    return results


def validate_venesa_home() -> Tuple[bool, str]:
    """Validate the VENESA_HOME directory.

    Returns:
        (is_valid, message) tuple
    """
    home = get_venesa_home()
    if not home.exists():
        return (False, f"{home} does not exist")

    config_file = get_config_path()
    if not config_file.exists():
        return (True, f"Valid, using defaults (no config.yaml at {config_file})")
    return (True, f"Valid with {config_file.name}")


def validate_shell(dialect: str = "auto") -> Tuple[bool, str]:
    """Resolve the shell executable the session would spawn."""
    from tools.shell_session import create_dialect

    try:
        resolved = create_dialect(dialect)
    except ValueError as e:
        return (False, str(e))

    executable = resolved.argv()[0]
    if Path(executable).is_absolute():
        found = Path(executable).exists()
    else:
        found = shutil.which(executable) is not None
    if not found:
        return (False, f"{resolved.name}: {executable} not found")
    return (True, f"{resolved.name}: {executable}")


def run_validation() -> Dict[str, Any]:
    """Run all validation checks.

    Returns:
        Dictionary with validation results
    """
    config = load_config()
    results = {
        "api_keys": validate_api_keys(),
        "venesa_home": validate_venesa_home(),
        "shell": validate_shell(config["shell"].get("dialect", "auto")),
        "model": config["model"].get("name"),
        "errors": [],
        "warnings": [],
    }

    required_prefixes = {KEY_POOL_SERVICES[s] for s in REQUIRED_SERVICES}
    for prefix, is_set, message in results["api_keys"]:
        if not is_set and prefix in required_prefixes:
            results["errors"].append(f"No {prefix} configured. Add keys to {get_env_path()}")

    home_valid, home_msg = results["venesa_home"]
    if not home_valid:
        results["warnings"].append(f"VENESA_HOME issue: {home_msg}")

    shell_ok, shell_msg = results["shell"]
    if not shell_ok:
        results["warnings"].append(f"Shell unavailable, system controls and commands will fail: {shell_msg}")

    if not results["model"]:
        results["errors"].append("No model specified")

    results["is_valid"] = len(results["errors"]) == 0
    return results


if __name__ == "__main__":
    # Allow running as standalone script
    import json
    results = run_validation()
    print(json.dumps(results, indent=2))

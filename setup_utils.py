"""
Shared utilities for AI stack tooling.

Provides .env and YAML file helpers and Docker Compose detection. Used by
stack_config.py and preflight.py.
"""

import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Union

import yaml
from dotenv import get_key


def read_env_value(env_file_path: Union[str, Path], key: str) -> Optional[str]:
    """
    Read one key from the stack .env file using python-dotenv.

    load_stack_config() uses this for POSTGRES_USER and POSTGRES_DB, the
    credentials docker-compose.yml passes to the postgres container.

    Returns:
        The value, or None when the file or key is missing or the value is empty
    """
    env_path = Path(env_file_path)
    if not env_path.is_file():
        return None

    # get_key returns None for a missing key and "" for `KEY=`
    return get_key(str(env_path), key) or None


def load_yaml_file(path: Path) -> dict:
    """
    Load a YAML mapping, returning {} for a missing or empty file.

    Raises:
        ValueError: if the document is not a mapping
        yaml.YAMLError: if the document cannot be parsed
    """
    if not path.exists():
        return {}

    with open(path, 'r') as f:
        data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def merge_configs(defaults: dict, overrides: dict) -> dict:
    """
    Deep merge two configuration dictionaries.

    Override values take precedence over defaults.
    Lists are replaced (not merged).
    """
    result = defaults.copy()

    for key, value in overrides.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def detect_compose_command() -> Optional[List[str]]:
    """
    Detect how Docker Compose is invoked on this host.

    Prefers the Compose v2 plugin (``docker compose``) and falls back to the
    standalone ``docker-compose`` binary.

    Returns:
        The command prefix as an argv list, or None if Compose is unavailable.
    """
    try:
        result = subprocess.run(
            ["docker", "compose", "version"],
            capture_output=True,
            text=True,
            timeout=10
        )
        if result.returncode == 0:
            return ["docker", "compose"]
    except (subprocess.SubprocessError, FileNotFoundError):
        pass

    if shutil.which("docker-compose"):
        return ["docker-compose"]
    return None

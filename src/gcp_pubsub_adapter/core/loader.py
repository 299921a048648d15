# gcp_pubsub_adapter/core/loader.py
"""
Shared utilities for loading local configuration files.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Pattern for environment variable substitution: ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def substitute_env_vars(value: Any) -> Any:
    """
    Recursively substitute environment variables in configuration values.

    Supports:
        - ${VAR} - substitutes with env var, raises if not set
        - ${VAR:-default} - substitutes with env var or default if not set

    Non-string scalars (numbers, booleans) are returned untouched so typed
    settings keep their JSON types.

    Raises:
        ValueError: If required env var is not set and no default provided
    """
    if isinstance(value, str):
        return _substitute_string(value)
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    else:
        return value


def _substitute_string(value: str) -> str:
    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)

        env_value = os.environ.get(var_name)

        if env_value is not None:
            return env_value
        elif default is not None:
            return default
        else:
            raise ValueError(
                f"Environment variable '{var_name}' is not set and no default provided"
            )

    return ENV_VAR_PATTERN.sub(replacer, value)


def load_settings_file(path: str | Path) -> dict[str, Any]:
    """
    Load a YAML (or JSON, which is valid YAML) settings document.

    Args:
        path: File to read.

    Returns:
        The parsed mapping with environment variables substituted. An empty
        file yields an empty mapping.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the document is not a mapping or substitution fails.
        yaml.YAMLError: If the document cannot be parsed.
    """
    file = Path(path).resolve()
    logger.info("Loading settings file: %s", file)

    with file.open("r", encoding="utf-8") as fh:
        content = yaml.safe_load(fh) or {}

    if not isinstance(content, dict):
        raise ValueError(
            f"Settings file '{file}' must contain a mapping, got {type(content).__name__}"
        )

    return substitute_env_vars(content)

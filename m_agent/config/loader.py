"""Load and save the JSON config file."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from m_agent.config.schema import Config
from m_agent.utils.helpers import get_data_path

# Maps whose keys are user data (tool names, header names, server names).
_PRESERVE_KEYS = {"policy", "headers"}
_PRESERVE_KEYS_CONVERT_VALUES = {"servers"}


def get_config_path() -> Path:
    """Default config file location."""
    return get_data_path() / "config.json"


def camel_to_snake(name: str) -> str:
    step = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", step).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)


def _convert_keys(data: Any, convert) -> Any:
    if isinstance(data, list):
        return [_convert_keys(item, convert) for item in data]
    if not isinstance(data, dict):
        return data
    converted: dict[str, Any] = {}
    for key, value in data.items():
        new_key = convert(key)
        plain = camel_to_snake(key)
        if plain in _PRESERVE_KEYS:
            converted[new_key] = value
        elif plain in _PRESERVE_KEYS_CONVERT_VALUES and isinstance(value, dict):
            converted[new_key] = {name: _convert_keys(item, convert) for name, item in value.items()}
        else:
            converted[new_key] = _convert_keys(value, convert)
    return converted


def load_config(config_path: Path | None = None) -> Config:
    """Load config from JSON (camelCase keys), falling back to defaults."""
    path = config_path or get_config_path()
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config(**_convert_keys(data, camel_to_snake))
        except (OSError, json.JSONDecodeError, ValueError) as exc:
            logger.warning(f"Failed to load config from {path}: {exc}; using defaults")
    return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """Write config as camelCase JSON."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = _convert_keys(config.model_dump(), snake_to_camel)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path

"""
Configuration loader for trirelay.

Loads and merges configuration from multiple sources:
1. Default values
2. Global config (~/.trirelay/config.yaml)
3. Explicit config file (--config)
4. Environment variables (TRIRELAY_<SECTION>__<KEY>)
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from trirelay.config.schema import Config
from trirelay.exceptions import ConfigurationError
from trirelay.storage.paths import get_global_config_path

ENV_PREFIX = "TRIRELAY_"
ENV_SEPARATOR = "__"
ENV_REFERENCE = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    try:
        with open(path, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}")
    return content


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Nested dicts merge recursively; any other value in ``override``
    replaces the one in ``base``.

    Args:
        base: Base configuration dictionary.
        override: Override configuration dictionary.

    Returns:
        Merged configuration dictionary.
    """
    result = base.copy()
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def expand_env_references(value: Any) -> Any:
    """
    Replace ``${NAME}`` string values with the environment variable NAME.

    Unset variables expand to an empty string. Dicts and lists are
    expanded recursively.
    """
    if isinstance(value, dict):
        return {k: expand_env_references(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_references(v) for v in value]
    if isinstance(value, str):
        match = ENV_REFERENCE.match(value.strip())
        if match:
            return os.environ.get(match.group(1), "")
    return value


def apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Environment variables follow the pattern:
    TRIRELAY_<SECTION>__<KEY>=<value>

    For example ``TRIRELAY_QQ__GROUP_ID=123`` sets ``qq.group_id``.

    Args:
        config: Configuration dictionary to modify.

    Returns:
        Configuration with environment overrides applied.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or ENV_SEPARATOR not in key:
            continue

        path = key[len(ENV_PREFIX):].lower().split(ENV_SEPARATOR)
        if not all(path):
            continue

        target = config
        for part in path[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[path[-1]] = _parse_env_value(value)

    return config


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to the appropriate type.

    Numbers stay strings here (ids such as chat ids must keep their exact
    text); pydantic coerces numeric fields during validation.
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False
    return value


def load_config(config_path: Path | None = None, skip_env: bool = False) -> Config:
    """
    Load and merge configuration from all sources.

    Loading order (later overrides earlier):
    1. Default values from Config model
    2. Global config (~/.trirelay/config.yaml)
    3. ``config_path`` if given
    4. Environment variables (TRIRELAY_*)

    Args:
        config_path: Explicit configuration file.
        skip_env: Skip environment variable overrides.

    Returns:
        Merged and validated Config object.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    config_dict = Config().model_dump()

    global_path = get_global_config_path()
    if global_path.exists():
        config_dict = deep_merge(config_dict, load_yaml_file(global_path))

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        config_dict = deep_merge(config_dict, load_yaml_file(config_path))

    config_dict = expand_env_references(config_dict)

    if not skip_env:
        config_dict = apply_env_overrides(config_dict)

    try:
        return Config.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


# Singleton for cached config
_cached_config: Config | None = None


def get_config(reload: bool = False, config_path: Path | None = None) -> Config:
    """
    Get the global configuration instance.

    Uses a cached instance. Use reload=True to force refresh.

    Args:
        reload: Force reload configuration from disk.
        config_path: Explicit configuration file (implies reload).

    Returns:
        Config instance.
    """
    global _cached_config

    if _cached_config is None or reload or config_path is not None:
        _cached_config = load_config(config_path)

    return _cached_config


def clear_config_cache() -> None:
    """Clear the cached configuration."""
    global _cached_config
    _cached_config = None

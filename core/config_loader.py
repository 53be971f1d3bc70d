"""YAML + environment configuration loader."""

import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

_TRUE_VALUES = ("true", "1", "yes", "on")


def load_config(path: str | Path) -> dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        path: Path to the YAML file.

    Returns:
        Dictionary containing the parsed configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the file contains invalid YAML.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config if config is not None else {}


def _coerce(raw: str, default: Any) -> Any:
    """Coerce an environment string to the type of its default."""
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if default is None and raw.strip() == "":
        return None
    return raw


def load_settings(
    defaults: Mapping[str, Any],
    path: str | Path | None = None,
    env_map: Optional[Mapping[str, str]] = None,
) -> dict[str, Any]:
    """
    Resolve settings from defaults, an optional YAML file and the environment.

    Precedence (lowest to highest):
        1. defaults
        2. YAML file at `path` (unknown keys are kept as-is)
        3. environment variables named in `env_map` (.env is loaded first)

    Args:
        defaults: Baseline settings; their types drive env coercion.
        path: Optional YAML file path. Missing files raise FileNotFoundError.
        env_map: Mapping of setting key -> environment variable name.

    Returns:
        Merged settings dictionary.

    Raises:
        ValueError: If an environment value cannot be coerced.
    """
    load_dotenv()
    settings: dict[str, Any] = dict(defaults)

    if path is not None:
        settings.update(load_config(path))

    for key, env_name in (env_map or {}).items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        try:
            settings[key] = _coerce(raw, defaults.get(key))
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from e

    return settings

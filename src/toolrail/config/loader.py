"""Configuration loading: TOML sources, merge, validation.

Sources, lowest priority first:
    1. Model defaults
    2. ``$XDG_CONFIG_HOME/toolrail/config.toml`` (``~/.config`` if unset)
    3. ``./toolrail.toml``
    4. The file named by ``$TOOLRAIL_CONFIG``
    5. An explicit ``path``
    6. Programmatic ``overrides``
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolrail.core.errors import ConfigError

from .schema import ToolrailConfig

logger = logging.getLogger(__name__)

ENV_VAR = "TOOLRAIL_CONFIG"
PROJECT_FILE = "toolrail.toml"


def _user_config_path() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    root = Path(xdg) if xdg else Path.home() / ".config"
    return root / "toolrail" / "config.toml"


def config_sources(path: str | Path | None = None) -> list[Path]:
    """Files to merge, lowest priority first.

    Optional locations are skipped when absent; a missing ``$TOOLRAIL_CONFIG``
    target or explicit *path* is an error.
    """
    sources = [p for p in (_user_config_path(), Path.cwd() / PROJECT_FILE) if p.is_file()]

    named = os.environ.get(ENV_VAR)
    if named:
        if not Path(named).is_file():
            msg = f"{ENV_VAR} points to non-existent file: {named}"
            raise ConfigError(msg)
        sources.append(Path(named))

    if path is not None:
        if not Path(path).is_file():
            msg = f"Config file not found: {path}"
            raise ConfigError(msg)
        sources.append(Path(path))
    return sources


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        msg = f"Invalid TOML in {path}: {e}"
        raise ConfigError(msg) from e
    except OSError as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigError(msg) from e

    unknown = sorted(set(data) - set(ToolrailConfig.model_fields))
    for section in unknown:
        logger.warning("Ignoring unknown config section [%s] in %s", section, path)
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge *override* into a copy of *base*; nested tables merge key by key."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ToolrailConfig:
    """Merge every config source and validate the result.

    Raises:
        ConfigError: On a missing named file, invalid TOML or a value that
            fails validation.
    """
    merged: dict[str, Any] = {}
    for source in config_sources(path):
        logger.debug("Loading config from %s", source)
        merged = _deep_merge(merged, _read_toml(source))
    if overrides:
        merged = _deep_merge(merged, overrides)

    try:
        return ToolrailConfig.model_validate(merged)
    except ValidationError as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e

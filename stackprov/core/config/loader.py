"""
Configuration loader — provision.yml → Settings.

Lookup order for the file:
    1. ``--config`` (must exist)
    2. ``STACKPROV_CONFIG``
    3. provision.yml in the cwd or any parent

No file at all means the built-in defaults.  ``STACKPROV_STATE_DIR``
overrides ``state_dir`` whatever the source.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stackprov.core.errors import ConfigError
from stackprov.core.models.settings import Settings

logger = logging.getLogger(__name__)

CONFIG_FILE = "provision.yml"
CONFIG_ENV = "STACKPROV_CONFIG"
STATE_DIR_ENV = "STACKPROV_STATE_DIR"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Nearest provision.yml at or above ``start_dir`` (default: cwd)."""
    start = (start_dir or Path.cwd()).resolve()
    for directory in (start, *start.parents):
        candidate = directory / CONFIG_FILE
        if candidate.is_file():
            return candidate
    return None


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping, not {type(data).__name__}")
    # Allow everything to be nested under a "provision:" key
    nested = data.get("provision")
    return nested if isinstance(nested, dict) else data


def load_settings(path: Path | None = None) -> Settings:
    """Load provisioner settings.

    Raises:
        ConfigError: an explicitly named file is missing, unreadable,
            not YAML, or fails validation.
    """
    if path is None and os.environ.get(CONFIG_ENV):
        path = Path(os.environ[CONFIG_ENV])

    if path is not None and not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    source = path or find_config_file()
    if source is None:
        logger.debug("No %s found, using defaults", CONFIG_FILE)
        settings = Settings()
    else:
        try:
            settings = Settings.model_validate(_read_mapping(source))
        except ValidationError as e:
            raise ConfigError(f"Invalid provisioner configuration in {source}: {e}") from e
        logger.info("Loaded settings from %s", source)

    state_dir = os.environ.get(STATE_DIR_ENV)
    if state_dir:
        settings = settings.model_copy(update={"state_dir": state_dir})
    return settings

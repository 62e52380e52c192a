"""
Application Configuration Persistence
=====================================

Stores ``AppSettings`` in a hidden JSON file in the user's home directory
(``~/.tagforge_config.json``) and applies it back field by field, so keys
from older or newer versions are ignored instead of breaking the load.
"""

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from tagforge.core.settings import AppSettings
from tagforge.utils.logger import log_config

CONFIG_PATH = Path.home() / ".tagforge_config.json"


def _apply(target, values: dict):
    for k, v in values.items():
        if hasattr(target, k):
            if k == "token" and isinstance(v, str):
                v = v.strip()
            setattr(target, k, v)


def save_settings(settings: AppSettings, path: Optional[Path] = None):
    """Persist settings as pretty-printed JSON. Failures are logged."""
    logger = logging.getLogger(__name__)
    path = Path(path or CONFIG_PATH)

    try:
        data = asdict(settings)
        log_config("Saving Configuration", data, logger)

        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

        logger.info(f"Configuration saved successfully to {path}")
    except OSError as e:
        logger.error(f"Failed to save configuration: {e}", exc_info=True)


def load_settings(settings: Optional[AppSettings] = None, path: Optional[Path] = None) -> AppSettings:
    """
    Load settings from disk onto ``settings`` (or fresh defaults).

    A missing or corrupted file leaves the defaults in place.
    """
    logger = logging.getLogger(__name__)
    settings = settings or AppSettings()
    path = Path(path or CONFIG_PATH)

    if not path.exists():
        logger.info(f"No existing configuration file found at {path}")
        return settings

    try:
        logger.info(f"Loading configuration from {path}")
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Configuration file is corrupted: {e}", exc_info=True)
        return settings
    except OSError as e:
        logger.error(f"Failed to load configuration: {e}", exc_info=True)
        return settings

    if not isinstance(data, dict):
        logger.error(f"Configuration file {path} does not contain an object")
        return settings

    log_config("Loaded Configuration", data, logger)

    for section in ("catalog", "conversion"):
        if isinstance(data.get(section), dict):
            _apply(getattr(settings, section), data[section])
    _apply(settings, {k: v for k, v in data.items() if k not in ("catalog", "conversion")})

    logger.debug(f"Catalog configuration updated: endpoint={settings.catalog.endpoint}")
    logger.info("Configuration loaded and applied successfully")
    return settings

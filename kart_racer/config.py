import json
import logging
import os
from dataclasses import fields
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "race_balance.json"
CONFIG_FILE_PATH = Path(os.getenv("KART_RACER_CONFIG", str(DEFAULT_CONFIG_PATH)))


def load_config(path=None):
    """
    Loads the race balance config file.
    """
    config_path = Path(path) if path else CONFIG_FILE_PATH
    try:
        with open(config_path, "r") as f:
            config = json.load(f)
        return config
    except FileNotFoundError:
        logger.error("Could not find config file at %s, using built-in defaults", config_path)
        return None
    except (OSError, ValueError) as e:
        logger.error("Could not parse config file %s: %s", config_path, e)
        return None


# Load the config ONCE when the module is first imported
BALANCE_CONFIG = load_config()


def get_config(key_path, default=None):
    """
    Safely gets a value from the loaded config using a 'dot.path'.
    Example: get_config('driving.lookahead_points')
    """
    if not BALANCE_CONFIG:
        return default

    try:
        keys = key_path.split(".")
        value = BALANCE_CONFIG
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        logger.warning("Could not find config key: %s", key_path)
        return default


def settings_from_config(settings_cls, section):
    """
    Builds a settings dataclass from a config section.

    Keys the dataclass does not declare are ignored, and fields the section
    does not mention keep their dataclass defaults.
    """
    values = get_config(section, default={})
    if not isinstance(values, dict):
        logger.warning("Config section '%s' is not an object, using defaults", section)
        values = {}

    known = {f.name for f in fields(settings_cls) if f.init}
    kwargs = {}
    for key, value in values.items():
        if key not in known:
            logger.debug("Ignoring unknown key '%s' in config section '%s'", key, section)
            continue
        kwargs[key] = tuple(value) if isinstance(value, list) else value
    return settings_cls(**kwargs)

"""
Shared configuration loader for the Plex Sensors service.

Loads a single JSON config file.  Search order:
  1. $PLEX_SENSORS_CONFIG              (explicit override, if set)
  2. /etc/plex-sensors/config.json     (deployed install)
  3. config.json                       (CWD - handy for local dev)
  4. ../../config/default.json         (repo fallback)

Secrets (MQTT_USER, MQTT_PASSWORD) stay in environment variables.

Usage:
    from lib.config import cfg

    device_name = cfg("device", default="Plex Sensors")
    port        = cfg("port", default=32512)
    broker      = cfg("transport", "mqtt_broker", default="homeassistant.local")
    sensors     = cfg("sensors", default=[])  # returns the whole list
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/plex-sensors/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

TRANSPORT_MODES = ("webhook", "mqtt", "both")


def _search_paths() -> list[str]:
    override = os.environ.get("PLEX_SENSORS_CONFIG")
    if override:
        return [override]
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    sensors = config.get("sensors")
    if not sensors:
        logger.warning("Config %s: no 'sensors' configured - every event will be ignored", path)
    elif not isinstance(sensors, list):
        logger.warning("Config %s: 'sensors' must be a list", path)
    else:
        for i, sensor in enumerate(sensors):
            if not isinstance(sensor, dict) or not sensor.get("name"):
                logger.warning("Config %s: sensor #%d has no 'name'", path, i)

    transport = config.get("transport") or {}
    mode = str(transport.get("mode", "webhook")).lower()
    if mode not in TRANSPORT_MODES:
        logger.warning("Config %s: unknown transport.mode '%s'", path, mode)
    ha = config.get("home_assistant") or {}
    if mode in ("webhook", "both") and not ha.get("webhook_url"):
        logger.warning("Config %s: missing home_assistant.webhook_url - using default", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue
        if not isinstance(_config, dict):
            logger.error("Config %s: top level must be an object", path)
            _config = None
            continue
        logger.info("Config loaded from %s", path)
        _validate(_config, path)
        return _config

    logger.warning("No config.json found - using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("port")                          → config["port"]
    cfg("transport", "mode")             → config["transport"]["mode"]
    cfg("transport", "mqtt_port", default=1883)
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()

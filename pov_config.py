#!/usr/bin/env python3
"""
POV Router Configuration & Logging
Version: 1.0.0

Configuration is a nested JSON document merged over DEFAULT_CONFIG:
- Loaded from $POV_CONFIG_DIR/config.json (default /etc/pov-router)
- Default file written on first run
- Environment variables of the legacy Node router override file values
- Validated once at startup (ConfigError is the only fatal error)
"""

import os
import re
import sys
import json
import time
import copy
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from urllib.parse import urlsplit

from pov_errors import ConfigError

# Configuration paths
CONFIG_DIR = Path(os.environ.get("POV_CONFIG_DIR", "/etc/pov-router"))
LOG_DIR = Path(os.environ.get("POV_LOG_DIR", "/var/log/pov-router"))

LOGGER_NAME = "POV-Router"
LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(name)s] - %(message)s'

DEFAULT_CONFIG = {
    "meta": {
        "version": "1.0.0",
        "created": None,
        "modified": None,
        "description": "POV Router Configuration"
    },
    "system": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR)
    },
    "obs": {
        "host": "127.0.0.1",
        "port": 4455,
        "password": "",
        "request_timeout": 3.0,
        "connect_retry_delay": 2.0,
        "reconnect_delay": 1.0
    },
    "routing": {
        "router_scene": "POV_ROUTER",
        "default_source": "",
        "debounce_window": 0.15,
        "camera_pattern": "^pov_",
        "max_group_depth": 1,
        "auto_source_template": "",
        "queue_size": 256
    },
    "gsi": {
        "token": "",
        "require_steamid64": True
    },
    "server": {
        "host": "0.0.0.0",
        "port": 3000,
        "heartbeat_interval": 2.0,
        "client_dist": ""
    },
    "mapping": {
        "file": str(CONFIG_DIR / "mapping.json")
    }
}

# env var -> (section, key, converter)
ENV_OVERRIDES = {
    "OBS_PASS": ("obs", "password", str),
    "ROUTER_SCENE": ("routing", "router_scene", str),
    "DEFAULT_SOURCE": ("routing", "default_source", str),
    "MIN_SWITCH_INTERVAL_MS": ("routing", "debounce_window", lambda v: float(v) / 1000.0),
    "GSI_TOKEN": ("gsi", "token", str),
    "PORT": ("server", "port", int),
    "MAPPING_FILE": ("mapping", "file", str),
}


def merge_config(default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge user config with defaults."""
    result = copy.deepcopy(default)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Apply OBS_URL / OBS_PASS / ROUTER_SCENE / ... environment overrides in place."""
    environ = os.environ if environ is None else environ

    obs_url = environ.get("OBS_URL")
    if obs_url:
        parts = urlsplit(obs_url)
        if parts.hostname:
            config['obs']['host'] = parts.hostname
        if parts.port:
            config['obs']['port'] = parts.port

    for var, (section, key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            config[section][key] = convert(raw)
        except ValueError:
            raise ConfigError(f"Invalid value for {var}: {raw!r}")
    return config


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Reject values the router cannot run with."""
    routing = config['routing']
    if not str(routing.get('router_scene', '')).strip():
        raise ConfigError("routing.router_scene must not be empty")
    if float(routing.get('debounce_window', 0)) < 0:
        raise ConfigError("routing.debounce_window must be >= 0")
    if int(routing.get('max_group_depth', 0)) < 0:
        raise ConfigError("routing.max_group_depth must be >= 0")
    if int(routing.get('queue_size', 0)) < 0:
        raise ConfigError("routing.queue_size must be >= 0")
    try:
        re.compile(routing.get('camera_pattern') or "")
    except re.error as e:
        raise ConfigError(f"routing.camera_pattern is not a valid regex: {e}")

    template = routing.get('auto_source_template') or ""
    if template:
        try:
            template.format(player_id="76561190000000000", steamid="76561190000000000")
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigError(f"routing.auto_source_template {template!r} may only use "
                              f"{{player_id}} or {{steamid}}: {e!r}")

    for section in ('obs', 'server'):
        port = config[section].get('port')
        if not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(f"{section}.port must be an integer in 1..65535, got {port!r}")

    if float(config['obs'].get('request_timeout', 0)) <= 0:
        raise ConfigError("obs.request_timeout must be > 0")
    return config


def load_or_create_config(config_dir: Optional[Path] = None, logger: Optional[logging.Logger] = None,
                          environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Load configuration (creating the default file if needed), apply env overrides and validate."""
    logger = logger or logging.getLogger(LOGGER_NAME)
    config_dir = Path(config_dir) if config_dir else CONFIG_DIR
    config_file = config_dir / "config.json"
    current_time = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())

    if config_file.exists():
        try:
            with open(config_file, 'r') as f:
                user_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to read {config_file}: {e}")
        if not isinstance(user_config, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")

        config = merge_config(DEFAULT_CONFIG, user_config)
        if not (user_config.get('mapping') or {}).get('file'):
            config['mapping']['file'] = str(config_dir / "mapping.json")
        logger.info(f"Loaded configuration from {config_file}")
    else:
        config = copy.deepcopy(DEFAULT_CONFIG)
        config['meta']['created'] = current_time
        config['meta']['modified'] = current_time
        config['mapping']['file'] = str(config_dir / "mapping.json")
        try:
            config_dir.mkdir(parents=True, exist_ok=True)
            with open(config_file, 'w') as f:
                json.dump(config, f, indent=4)
            logger.info(f"Created default configuration at {config_file}")
        except OSError as e:
            logger.warning(f"Could not save default configuration to {config_file}: {e}")

    apply_env_overrides(config, environ)
    return validate_config(config)


def obs_url(config: Dict[str, Any]) -> str:
    """WebSocket URL of the OBS instance."""
    return f"ws://{config['obs']['host']}:{config['obs']['port']}"


def setup_logging(config: Dict[str, Any]) -> logging.Logger:
    """Configure logging: stdout plus a log file in system.log_dir when it is writable."""
    level_name = str(config['system'].get('log_level', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    log_dir = Path(config['system'].get('log_dir') or LOG_DIR)
    file_error = None
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "pov_router.log"))
    except OSError as e:
        file_error = e

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

    # Keep per-frame websocket chatter and access lines out of the router log
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    logger = logging.getLogger(LOGGER_NAME)
    if file_error is not None:
        logger.warning(f"File logging disabled, cannot use {log_dir}: {file_error}")
    logger.info("=" * 60)
    logger.info("POV Router Starting")
    logger.info("=" * 60)
    return logger

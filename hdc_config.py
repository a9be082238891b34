#!/usr/bin/env python3
"""
HDC Configuration
Version: 1.0.0

JSON configuration for the deck controller:
- Defaults merged recursively under the user's config.json
- Config file created with defaults on first run
- Validation returning a list of problems
- Deck reachability check and model detection
"""

import os
import copy
import json
import time
import socket
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any

from hdc_poller import MIN_POLL_INTERVAL_MS, MAX_POLL_INTERVAL_MS

DEFAULT_CONFIG_DIR = "/etc/hdc"
CONFIG_FILENAME = "config.json"

TIMECODE_MODES = ("disabled", "notifications", "polling")

# Minimum protocol version with display timecode notifications
DISPLAY_TIMECODE_MIN_PROTOCOL = 1.11

DEFAULT_CONFIG = {
    "meta": {
        "version": "1.0.0",
        "created": None,
        "modified": None,
        "description": "HDC Configuration"
    },
    "system": {
        "log_level": "INFO",
        "log_dir": "/var/log/hdc",
        "health_interval": 60
    },
    "device": {
        "host": "",
        "port": 9993,
        "model_id": "hdStudio",
        "auto_detect_model": True,
        "transport": "",
        "connect_timeout": 10,
        "command_timeout": 5,
        "reachability_timeout": 3
    },
    "timecode": {
        "mode": "disabled",
        "polling_interval": 500,
        "max_poll_failures": 3
    },
    "cue": {
        "fade_duration": 2.0
    },
    "record": {
        "reel": "A001"
    },
    "format": {
        "token_timeout": 10
    }
}

# Shuttle speed limits (percent) per model id
MODEL_MAX_SHUTTLE = {
    "hdStudio": 1600,
    "hdStudioPro": 1600,
    "hdStudio12G": 1600,
    "bmdDup4K": 100,
    "hdStudioMini": 1600,
    "hdExtreme8K": 5000,
}

# Checked in order; first match wins
MODEL_PATTERNS = [
    ("Extreme", "hdExtreme8K"),
    ("Mini", "hdStudioMini"),
    ("Duplicator", "bmdDup4K"),
    ("12G", "hdStudio12G"),
    ("Pro", "hdStudioPro"),
]


def get_config_dir() -> Path:
    return Path(os.environ.get("HDC_CONFIG_DIR", DEFAULT_CONFIG_DIR))


def merge_config(default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge user config with defaults."""
    result = copy.deepcopy(default)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_config(result[key], value)
        else:
            result[key] = value
    return result


def load_or_create_config(config_dir: Optional[Path] = None,
                          logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
    """Load existing configuration or create default with timestamps."""
    logger = logger or logging.getLogger(__name__)
    config_dir = Path(config_dir) if config_dir else get_config_dir()
    config_file = config_dir / CONFIG_FILENAME
    current_time = time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime())

    if config_file.exists():
        try:
            with open(config_file, 'r') as f:
                config = json.load(f)

            config = merge_config(DEFAULT_CONFIG, config)
            config['meta']['modified'] = current_time

            with open(config_file, 'w') as f:
                json.dump(config, f, indent=4)

            logger.info(f"Loaded and updated configuration from {config_file}")
            return config

        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config: {e}. Using defaults.")

    config_dir.mkdir(parents=True, exist_ok=True)
    config = copy.deepcopy(DEFAULT_CONFIG)
    config['meta']['created'] = current_time
    config['meta']['modified'] = current_time

    with open(config_file, 'w') as f:
        json.dump(config, f, indent=4)

    logger.info(f"Created default configuration at {config_file}")
    return config


def validate_configuration(config: Dict[str, Any]) -> List[str]:
    """Validate configuration structure and values; returns the problems found."""
    validation_errors = []

    required_sections = ['system', 'device', 'timecode', 'cue', 'record', 'format']
    for section in required_sections:
        if section not in config:
            validation_errors.append(f"Missing required section: {section}")

    device = config.get('device', {})
    host = device.get('host')
    port = device.get('port')
    if not host or not isinstance(port, int) or not (1 <= port <= 65535):
        validation_errors.append("Invalid deck host/port configuration")

    for timeout in ('connect_timeout', 'command_timeout'):
        value = device.get(timeout)
        if not isinstance(value, (int, float)) or value <= 0:
            validation_errors.append(f"Invalid device timeout: {timeout}")

    timecode = config.get('timecode', {})
    if timecode.get('mode') not in TIMECODE_MODES:
        validation_errors.append(f"Invalid timecode mode: {timecode.get('mode')}")

    interval = timecode.get('polling_interval')
    if not isinstance(interval, int) or not (MIN_POLL_INTERVAL_MS <= interval <= MAX_POLL_INTERVAL_MS):
        validation_errors.append(
            f"Invalid polling_interval: must be {MIN_POLL_INTERVAL_MS}-{MAX_POLL_INTERVAL_MS} ms"
        )

    fade = config.get('cue', {}).get('fade_duration')
    if not isinstance(fade, (int, float)) or fade < 0:
        validation_errors.append("Invalid fade_duration: must be a non-negative number")

    token_timeout = config.get('format', {}).get('token_timeout')
    if not isinstance(token_timeout, (int, float)) or token_timeout <= 0:
        validation_errors.append("Invalid format token_timeout")

    return validation_errors


def detect_model(model: str) -> str:
    """Map the deck-reported model string to a model id."""
    for pattern, model_id in MODEL_PATTERNS:
        if pattern in (model or ''):
            return model_id
    return "hdStudio"


def max_shuttle(model_id: str) -> int:
    return MODEL_MAX_SHUTTLE.get(model_id, MODEL_MAX_SHUTTLE["hdStudio"])


def check_device_reachable(host: str, port: int, timeout: float = 3) -> bool:
    """Plain TCP connect test against the deck's control port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        return sock.connect_ex((host, port)) == 0
    except (socket.gaierror, OSError):
        return False
    finally:
        sock.close()

"""
MODULE: SETTINGS_LOADER

DESCRIPTION:
    Reads config/settings.yaml and lays it over the built-in defaults.
    A partial file is valid; a missing file just means defaults.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("UNIMIX.CONFIG")

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
DEFAULT_CONFIG_PATH = os.path.join(PROJECT_ROOT, "config", "settings.yaml")

DEFAULT_SETTINGS: Dict[str, Any] = {
    'session': {
        'profile': 'motec-m1',
        'chip_type': 'STANDARD',
        'tick_seconds': 0.1,
        'optimizer_interval_seconds': 15.0,
        'log_capacity': 2000,
        'record_on_start': True,
        'advisor_interval_seconds': 60.0,
        'preset': '',
    },
    'signal': {
        'psi_max': 29.0,
    },
    'simulator': {},
    'optimizer': {},
    'hardware': {
        'simulation_mode': True,
        'port': None,
        'protocol': '6',
    },
    'advisor': {
        'enabled': False,
        'model': 'gemini-2.5-pro',
        'api_key_env': 'GEMINI_API_KEY',
        'timeout': 30.0,
        'history_window': 20,
    },
    'database': {
        'path': '',
        'commit_every': 10,
    },
    'logging': {
        'level': 'INFO',
        'directory': 'data/logs',
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_settings(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return _deep_merge(DEFAULT_SETTINGS, overrides or {})


def load_settings(path: Optional[str] = None) -> Dict[str, Any]:
    config_path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(config_path):
        logger.warning(f"No settings file at {config_path}. Using defaults.")
        return merge_settings(None)

    with open(config_path, 'r') as f:
        user_settings = yaml.safe_load(f) or {}

    return merge_settings(user_settings)


def resolve_path(path: str) -> str:
    """Relative paths in the settings file are relative to the project root."""
    if not path or os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)

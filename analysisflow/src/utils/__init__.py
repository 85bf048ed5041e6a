"""Utility modules - configuration and HTTP client helpers."""

from .config import (
    ConfigLoader,
    ConfigError,
    CoordinatorSettings,
    get_config_loader,
    load_config,
    load_coordinator_settings,
)

__all__ = [
    'ConfigLoader',
    'ConfigError',
    'CoordinatorSettings',
    'get_config_loader',
    'load_config',
    'load_coordinator_settings',
]

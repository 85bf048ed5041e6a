"""
Configuration Loading - YAML config for the analysis coordinator.

This module provides:
- YAML configuration loading with per-file validation
- Environment variable substitution (${VAR} and ${VAR:-default})
- CoordinatorSettings, the typed view of coordinator.yaml
- Cached, lock-guarded global loader
"""

import logging
import math
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

_config_lock = threading.Lock()


class ConfigError(Exception):
    """Configuration loading or validation error."""
    pass


class ConfigLoader:
    """
    Loads YAML configs from one directory with environment substitution
    and validation.
    """

    ENV_VAR_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

    def __init__(self, config_dir: str | Path):
        self.config_dir = Path(config_dir)
        self._cache: dict[str, dict] = {}

        if not self.config_dir.exists():
            raise ConfigError(f"Config directory not found: {self.config_dir}")

    def load(self, config_name: str, validate: bool = True) -> dict:
        """
        Load a configuration file.

        Args:
            config_name: Config file name (without .yaml extension)
            validate: Whether to validate the config

        Returns:
            Configuration dictionary
        """
        if config_name in self._cache:
            return self._cache[config_name]

        config_path = self.config_dir / f"{config_name}.yaml"
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                raw_content = f.read()

            config = yaml.safe_load(self._substitute_env_vars(raw_content)) or {}
            config = self._coerce_types(config)

            if validate:
                self._validate_config(config_name, config)

            self._cache[config_name] = config
            logger.info(f"Loaded config: {config_name}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    def get_database_config(self) -> dict:
        """The `database` section of database.yaml."""
        return self.load('database').get('database', {})

    def get_coordinator_config(self) -> dict:
        """The `coordinator` section of coordinator.yaml."""
        return self.load('coordinator').get('coordinator', {})

    def clear_cache(self) -> None:
        self._cache.clear()

    def _substitute_env_vars(self, content: str) -> str:
        def replace_match(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ''
            return os.environ.get(var_name, default_value)

        return self.ENV_VAR_PATTERN.sub(replace_match, content)

    def _coerce_types(self, value: Any) -> Any:
        """Recursively turn numeric and boolean strings into values."""
        if isinstance(value, dict):
            return {k: self._coerce_types(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [self._coerce_types(item) for item in value]
        elif isinstance(value, str):
            if value.lower() in ('true', 'yes', 'on'):
                return True
            if value.lower() in ('false', 'no', 'off'):
                return False

            if value.lower() in ('inf', '-inf', 'nan', 'infinity', '-infinity'):
                return value

            if value.lstrip('-').isdigit():
                try:
                    return int(value)
                except ValueError:
                    pass

            try:
                float_val = float(value)
                if math.isfinite(float_val):
                    return float_val
            except ValueError:
                pass

            return value
        return value

    def _validate_config(self, config_name: str, config: dict) -> None:
        validators = {
            'database': self._validate_database_config,
            'coordinator': self._validate_coordinator_config,
        }

        validator = validators.get(config_name)
        if validator:
            validator(config)

    def _validate_database_config(self, config: dict) -> None:
        db = config.get('database', {})

        conn = db.get('connection', {})
        for name in ('host', 'port', 'database', 'user'):
            if name not in conn:
                raise ConfigError(f"Missing database connection field: {name}")

        logger.debug("Database config validated successfully")

    def _validate_coordinator_config(self, config: dict) -> None:
        coordinator = config.get('coordinator')
        if not isinstance(coordinator, dict):
            raise ConfigError("Missing coordinator section")

        workflow = coordinator.get('workflow', {})
        rounds = workflow.get('default_debate_rounds', 2)
        if not isinstance(rounds, int) or rounds <= 0:
            raise ConfigError("default_debate_rounds must be a positive integer")

        min_successes = workflow.get('min_analysis_successes', 3)
        if not isinstance(min_successes, int) or min_successes <= 0:
            raise ConfigError("min_analysis_successes must be a positive integer")

        invocation = coordinator.get('invocation', {})
        if not invocation.get('base_url'):
            raise ConfigError("Missing invocation.base_url")

        staleness = coordinator.get('staleness', {})
        stale_after = staleness.get('reactivate_after_seconds', 210)
        if not isinstance(stale_after, (int, float)) or stale_after < 0:
            raise ConfigError("Invalid staleness.reactivate_after_seconds")

        logger.debug("Coordinator config validated successfully")


@dataclass
class CoordinatorSettings:
    """Typed view of coordinator.yaml, injected into the coordinator."""
    default_debate_rounds: int = 2
    min_analysis_successes: int = 3
    agent_max_retries: int = 2
    invocation_base_url: str = 'http://localhost:54321/functions/v1'
    invocation_timeout_seconds: float = 30.0
    invocation_max_retries: int = 2
    invocation_retry_delay_seconds: float = 2.0
    service_token: str = ''
    reactivate_after_seconds: float = 210.0
    active_window_days: int = 7
    default_preferences: dict = field(default_factory=lambda: {
        'profit_target': 25,
        'stop_loss': 10,
        'near_limit_threshold': 20,
        'near_position_threshold': 20,
    })
    default_target_allocations: dict = field(default_factory=lambda: {
        'cash': 20,
        'stocks': 80,
    })
    broker_base_url: str = 'https://paper-api.alpaca.markets'

    @classmethod
    def from_config(cls, config: dict) -> 'CoordinatorSettings':
        workflow = config.get('workflow', {})
        invocation = config.get('invocation', {})
        staleness = config.get('staleness', {})
        context = config.get('context', {})
        broker = config.get('broker', {})
        defaults = cls()

        return cls(
            default_debate_rounds=int(workflow.get('default_debate_rounds', defaults.default_debate_rounds)),
            min_analysis_successes=int(workflow.get('min_analysis_successes', defaults.min_analysis_successes)),
            agent_max_retries=int(workflow.get('agent_max_retries', defaults.agent_max_retries)),
            invocation_base_url=str(invocation.get('base_url', defaults.invocation_base_url)).rstrip('/'),
            invocation_timeout_seconds=float(invocation.get('timeout_seconds', defaults.invocation_timeout_seconds)),
            invocation_max_retries=int(invocation.get('max_retries', defaults.invocation_max_retries)),
            invocation_retry_delay_seconds=float(
                invocation.get('retry_delay_seconds', defaults.invocation_retry_delay_seconds)
            ),
            service_token=str(invocation.get('service_token') or os.environ.get('ANALYSISFLOW_SERVICE_TOKEN', '')),
            reactivate_after_seconds=float(
                staleness.get('reactivate_after_seconds', defaults.reactivate_after_seconds)
            ),
            active_window_days=int(staleness.get('active_window_days', defaults.active_window_days)),
            default_preferences=dict(context.get('default_preferences') or defaults.default_preferences),
            default_target_allocations=dict(
                context.get('default_target_allocations') or defaults.default_target_allocations
            ),
            broker_base_url=str(broker.get('base_url', defaults.broker_base_url)).rstrip('/'),
        )


# Global config instance (lazy-loaded, thread-safe)
_config_loader: Optional[ConfigLoader] = None


def get_config_loader(config_dir: str | Path | None = None) -> ConfigLoader:
    """
    Get or create the global ConfigLoader instance.

    Args:
        config_dir: Path to config directory (defaults to <project root>/config)
    """
    global _config_loader

    if _config_loader is None:
        with _config_lock:
            if _config_loader is None:
                if config_dir is None:
                    project_root = Path(__file__).parent.parent.parent.parent
                    config_dir = project_root / 'config'

                _config_loader = ConfigLoader(config_dir)

    return _config_loader


def reset_config_loader() -> None:
    """Reset the global ConfigLoader instance (for testing)."""
    global _config_loader
    with _config_lock:
        _config_loader = None
        logger.debug("Global config loader reset")


def load_config(config_name: str) -> dict:
    """Load a config file through the global loader."""
    return get_config_loader().load(config_name)


def load_coordinator_settings() -> CoordinatorSettings:
    return CoordinatorSettings.from_config(get_config_loader().get_coordinator_config())

"""
Unit tests for the Config Loading Utility.

Tests validate:
- YAML loading and environment variable substitution
- Config validation
- CoordinatorSettings mapping
- Global loader caching
"""

import pytest
from pathlib import Path

from analysisflow.src.utils.config import (
    ConfigError,
    ConfigLoader,
    CoordinatorSettings,
    get_config_loader,
    load_coordinator_settings,
    reset_config_loader,
)


# =============================================================================
# ConfigLoader Tests
# =============================================================================

class TestConfigLoader:
    """Tests for ConfigLoader."""

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigError, match="Config directory not found"):
            ConfigLoader(tmp_path / "nope")

    def test_missing_file(self, temp_config_dir):
        loader = ConfigLoader(temp_config_dir)
        with pytest.raises(ConfigError, match="Config file not found"):
            loader.load('risk')

    def test_env_default_substitution(self, temp_config_dir, monkeypatch):
        monkeypatch.delenv('TEST_DB_PASSWORD', raising=False)
        loader = ConfigLoader(temp_config_dir)

        db = loader.get_database_config()

        assert db['connection']['password'] == 'secret'
        assert db['connection']['port'] == 5432

    def test_env_override(self, temp_config_dir, monkeypatch):
        monkeypatch.setenv('TEST_FUNCTIONS_URL', 'http://workers.internal/functions/v1')
        loader = ConfigLoader(temp_config_dir)

        coordinator = loader.get_coordinator_config()

        assert coordinator['invocation']['base_url'] == 'http://workers.internal/functions/v1'

    def test_coerces_numeric_strings(self, temp_config_dir, monkeypatch):
        monkeypatch.setenv('TEST_DB_PASSWORD', '12345')
        loader = ConfigLoader(temp_config_dir)

        assert loader.get_database_config()['connection']['password'] == 12345

    def test_cache(self, temp_config_dir):
        loader = ConfigLoader(temp_config_dir)
        first = loader.load('coordinator')
        (temp_config_dir / "coordinator.yaml").write_text("coordinator: {}\n")
        assert loader.load('coordinator') is first

        loader.clear_cache()
        with pytest.raises(ConfigError, match="base_url"):
            loader.load('coordinator')

    def test_invalid_yaml(self, temp_config_dir):
        (temp_config_dir / "broken.yaml").write_text("a: [unclosed\n")
        loader = ConfigLoader(temp_config_dir)
        with pytest.raises(ConfigError, match="Invalid YAML"):
            loader.load('broken')


class TestConfigValidation:
    """Tests for per-file validation."""

    def _write(self, directory: Path, content: str) -> ConfigLoader:
        (directory / "coordinator.yaml").write_text(content)
        return ConfigLoader(directory)

    def test_missing_coordinator_section(self, tmp_path):
        loader = self._write(tmp_path, "other: 1\n")
        with pytest.raises(ConfigError, match="Missing coordinator section"):
            loader.load('coordinator')

    def test_invalid_debate_rounds(self, tmp_path):
        loader = self._write(tmp_path, """
coordinator:
  workflow:
    default_debate_rounds: 0
  invocation:
    base_url: http://x
""")
        with pytest.raises(ConfigError, match="default_debate_rounds"):
            loader.load('coordinator')

    def test_invalid_staleness(self, tmp_path):
        loader = self._write(tmp_path, """
coordinator:
  invocation:
    base_url: http://x
  staleness:
    reactivate_after_seconds: -5
""")
        with pytest.raises(ConfigError, match="reactivate_after_seconds"):
            loader.load('coordinator')

    def test_database_missing_field(self, tmp_path):
        (tmp_path / "database.yaml").write_text("database:\n  connection:\n    host: x\n")
        with pytest.raises(ConfigError, match="port"):
            ConfigLoader(tmp_path).load('database')

    def test_skip_validation(self, tmp_path):
        loader = self._write(tmp_path, "other: 1\n")
        assert loader.load('coordinator', validate=False) == {'other': 1}


# =============================================================================
# CoordinatorSettings Tests
# =============================================================================

class TestCoordinatorSettings:
    """Tests for CoordinatorSettings."""

    def test_defaults(self):
        settings = CoordinatorSettings()
        assert settings.default_debate_rounds == 2
        assert settings.min_analysis_successes == 3
        assert settings.reactivate_after_seconds == 210
        assert settings.active_window_days == 7

    def test_from_config(self, temp_config_dir):
        config = ConfigLoader(temp_config_dir).get_coordinator_config()

        settings = CoordinatorSettings.from_config(config)

        assert settings.default_debate_rounds == 3
        assert settings.min_analysis_successes == 2
        assert settings.agent_max_retries == 1
        assert settings.invocation_base_url == 'http://localhost:9999/functions/v1'
        assert settings.service_token == 'test-token'
        assert settings.reactivate_after_seconds == 120
        assert settings.active_window_days == 3
        assert settings.default_preferences['profit_target'] == 30
        assert settings.default_target_allocations == {'cash': 20, 'stocks': 80}

    def test_service_token_from_environment(self, monkeypatch):
        monkeypatch.setenv('ANALYSISFLOW_SERVICE_TOKEN', 'env-token')
        settings = CoordinatorSettings.from_config({'invocation': {'base_url': 'http://x'}})
        assert settings.service_token == 'env-token'


# =============================================================================
# Global loader
# =============================================================================

class TestGlobalLoader:
    """Tests for the cached global loader."""

    def test_singleton(self, temp_config_dir):
        loader = get_config_loader(temp_config_dir)
        assert get_config_loader() is loader

        reset_config_loader()
        assert get_config_loader(temp_config_dir) is not loader

    def test_load_coordinator_settings(self, temp_config_dir):
        get_config_loader(temp_config_dir)
        assert load_coordinator_settings().default_debate_rounds == 3

    def test_project_config_is_valid(self):
        """The shipped config/ directory loads and validates."""
        settings = load_coordinator_settings()
        assert settings.default_debate_rounds == 2
        assert get_config_loader().get_database_config()['connection']['host']

"""
Unit tests for configuration loading and validation.

Tests defaults, strict key checking and error handling.
"""

import os
import shutil
import tempfile

import pytest
import yaml

from ai_usage_health.config.loader import (
    HealthConfig,
    LogLevel,
    default_config,
    load_health_config,
    resolve_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_load_full_config(self):
        """Test loading a configuration with every section."""
        config_path = self._write_config({
            'database': {'path': 'health.db'},
            'matching': {'strategy': 'Token'},
            'insights': {'waste_threshold': 8000},
            'history': {'limit': 60, 'stale_after_hours': 6},
            'logging': {'level': 'debug'},
        })

        config = load_health_config(config_path)

        assert isinstance(config, HealthConfig)
        assert config.database.path == 'health.db'
        assert config.matching.strategy == 'token'
        assert config.insights.waste_threshold == 8000
        assert config.history.limit == 60
        assert config.history.stale_after_hours == 6.0
        assert config.logging.level is LogLevel.DEBUG

    def test_partial_config_uses_defaults(self):
        """Test that missing sections fall back to defaults."""
        config = load_health_config(self._write_config({'insights': {'waste_threshold': 100}}))

        assert config.insights.waste_threshold == 100
        assert config.history.limit == 30
        assert config.matching.strategy == 'substring'
        assert config.logging.level is LogLevel.WARNING

    def test_empty_file_returns_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        assert load_health_config(config_path) == default_config()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_health_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("history: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_health_config(config_path)

    def test_non_mapping_config(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            load_health_config(self._write_config(['a', 'b']))

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_health_config(self._write_config({'budgets': {}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in history"):
            load_health_config(self._write_config({'history': {'limit': 10, 'retention': 5}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'matching' must be a dictionary"):
            load_health_config(self._write_config({'matching': 'token'}))

    def test_wrong_types(self):
        with pytest.raises(ValueError, match="must be an integer"):
            load_health_config(self._write_config({'insights': {'waste_threshold': '5000'}}))
        with pytest.raises(ValueError, match="must be an integer"):
            load_health_config(self._write_config({'history': {'limit': True}}))
        with pytest.raises(ValueError, match="must be a string"):
            load_health_config(self._write_config({'database': {'path': 3}}))
        with pytest.raises(ValueError, match="must be a number"):
            load_health_config(self._write_config({'history': {'stale_after_hours': 'soon'}}))

    def test_out_of_range_values(self):
        with pytest.raises(ValueError, match="waste_threshold must be > 0"):
            load_health_config(self._write_config({'insights': {'waste_threshold': 0}}))
        with pytest.raises(ValueError, match="history.limit"):
            load_health_config(self._write_config({'history': {'limit': 400}}))

    def test_unknown_strategy(self):
        with pytest.raises(ValueError, match="matching.strategy"):
            load_health_config(self._write_config({'matching': {'strategy': 'regex'}}))

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="'level' in logging must be one of"):
            load_health_config(self._write_config({'logging': {'level': 'verbose'}}))

    def test_resolve_config(self):
        """Test that no path resolves to defaults."""
        assert resolve_config(None) == default_config()
        config_path = self._write_config({'history': {'limit': 7}})
        assert resolve_config(config_path).history.limit == 7

"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and environment overrides.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
import yaml

from token_ledger.config.loader import (
    AnalyticsConfig,
    PricingConfig,
    default_state_dir,
    load_config,
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

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "state_dir": os.path.join(self.temp_dir, "state"),
            "retention_days": 7,
            "index_stale_seconds": 60,
            "top_agents_limit": 3,
            "pricing": {"external_module": "my_pricing"},
        })

        config = load_config(config_path)

        assert config.state_dir == Path(self.temp_dir) / "state"
        assert config.retention_days == 7
        assert config.index_stale_seconds == 60.0
        assert config.top_agents_limit == 3
        assert config.pricing.external_module == "my_pricing"

    def test_null_external_module_disables_live_pricing(self):
        config = load_config(self._write_config({"pricing": {"external_module": None}}))
        assert config.pricing.external_module is None

    def test_partial_config_uses_defaults(self):
        config = load_config(self._write_config({"retention_days": 10}))
        assert config.retention_days == 10
        assert config.top_agents_limit == 10
        assert config.pricing.external_module == "litellm"

    def test_empty_config_uses_defaults(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        Path(path).write_text("", encoding="utf-8")
        assert load_config(path) == AnalyticsConfig(state_dir=default_state_dir())

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "nonexistent.yaml"))

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"retention": 30}))

    def test_unknown_pricing_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in pricing"):
            load_config(self._write_config({"pricing": {"module": "litellm"}}))

    @pytest.mark.parametrize("data", [
        {"retention_days": 0},
        {"retention_days": "30"},
        {"retention_days": True},
        {"top_agents_limit": -1},
        {"index_stale_seconds": -5},
        {"state_dir": ""},
        {"pricing": "litellm"},
        {"pricing": {"external_module": ""}},
    ])
    def test_invalid_values_rejected(self, data):
        with pytest.raises(ValueError):
            load_config(self._write_config(data))

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(self._write_config(["a", "b"]))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        Path(path).write_text("retention_days: [1, 2", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            load_config(path)


class TestEnvironment:
    """Test environment variable overrides."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_home_env_moves_state_dir(self, monkeypatch):
        monkeypatch.setenv("TOKEN_LEDGER_HOME", self.temp_dir)
        monkeypatch.delenv("TOKEN_LEDGER_CONFIG", raising=False)

        assert default_state_dir() == Path(self.temp_dir) / "state"
        assert load_config().state_dir == Path(self.temp_dir) / "state"

    def test_config_in_home_is_picked_up(self, monkeypatch):
        monkeypatch.setenv("TOKEN_LEDGER_HOME", self.temp_dir)
        monkeypatch.delenv("TOKEN_LEDGER_CONFIG", raising=False)
        with open(os.path.join(self.temp_dir, "config.yaml"), "w", encoding="utf-8") as f:
            yaml.dump({"retention_days": 3}, f)

        assert load_config().retention_days == 3

    def test_config_env_var(self, monkeypatch):
        path = os.path.join(self.temp_dir, "custom.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump({"top_agents_limit": 2}, f)
        monkeypatch.setenv("TOKEN_LEDGER_CONFIG", path)

        assert load_config().top_agents_limit == 2

    def test_defaults(self):
        config = AnalyticsConfig(state_dir=Path(self.temp_dir))
        assert config.retention_days == 30
        assert config.index_stale_seconds == 300
        assert config.pricing == PricingConfig()

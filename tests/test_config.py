"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults and environment selection.
"""

import os
import tempfile

import pytest
import yaml

from kroniq_guard.config.loader import (
    CONFIG_ENV_VAR,
    DB_ENV_VAR,
    DEFAULT_DB_PATH,
    AccessConfig,
    GuardConfig,
    LedgerConfig,
    RoutingConfig,
    db_path_from_env,
    default_config,
    load_config_from_env,
    load_guard_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
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
            "ledger": {"early_adopter_limit": 50, "standard_allocation": 80000},
            "access": {"cache_ttl_seconds": 2.5},
            "routing": {"confirm_min": 0.4, "auto_route_min": 0.9},
            "generation_limits": {"image": 3},
            "provider": {"base_url": "http://localhost:8080/v1"},
        })

        config = load_guard_config(config_path)

        assert config.ledger.early_adopter_limit == 50
        assert config.ledger.standard_allocation == 80000
        # untouched keys keep their defaults
        assert config.ledger.early_adopter_tokens == 300_000
        assert config.access.cache_ttl_seconds == 2.5
        assert config.routing.confirm_min == 0.4
        assert config.routing.auto_route_min == 0.9
        assert config.get_generation_limit("image") == 3
        assert config.get_generation_limit("video") == 2
        assert config.provider.base_url == "http://localhost:8080/v1"

    def test_empty_file_returns_defaults(self):
        """Test that an empty file yields the product defaults."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        assert load_guard_config(config_path) == default_config()

    def test_missing_file_raises(self):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_guard_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that malformed YAML is reported."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w') as f:
            f.write("ledger: [unclosed")

        with pytest.raises(yaml.YAMLError):
            load_guard_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        """Test that a typo at the top level is rejected."""
        config_path = self._write_config({"legder": {"early_adopter_limit": 1}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_guard_config(config_path)

    def test_unknown_section_key_rejected(self):
        """Test that a typo inside a section is rejected."""
        config_path = self._write_config({"ledger": {"cost_multiplyer": 3}})

        with pytest.raises(ValueError, match="Unknown keys in ledger"):
            load_guard_config(config_path)

    def test_non_numeric_value_rejected(self):
        """Test that a string where a number belongs is rejected."""
        config_path = self._write_config({"ledger": {"cost_multiplier": "two"}})

        with pytest.raises(ValueError, match="must be a number"):
            load_guard_config(config_path)

    def test_boolean_value_rejected(self):
        """Test that booleans are not accepted as numbers."""
        config_path = self._write_config({"access": {"cache_max_entries": True}})

        with pytest.raises(ValueError, match="must be a number"):
            load_guard_config(config_path)

    def test_fractional_int_rejected(self):
        """Test that a fractional value for a whole-number key is rejected."""
        config_path = self._write_config({"ledger": {"standard_allocation": 1000.5}})

        with pytest.raises(ValueError, match="must be a whole number"):
            load_guard_config(config_path)

    def test_non_positive_ledger_value_rejected(self):
        """Test that zero ledger values are rejected."""
        config_path = self._write_config({"ledger": {"usd_per_token": 0}})

        with pytest.raises(ValueError, match="usd_per_token must be > 0"):
            load_guard_config(config_path)

    def test_negative_generation_limit_rejected(self):
        """Test that negative daily limits are rejected."""
        config_path = self._write_config({"generation_limits": {"video": -1}})

        with pytest.raises(ValueError, match="generation_limits.video"):
            load_guard_config(config_path)

    def test_section_must_be_mapping(self):
        """Test that a list section is rejected."""
        config_path = self._write_config({"routing": [0.5, 0.8]})

        with pytest.raises(ValueError, match="'routing' must be a dictionary"):
            load_guard_config(config_path)


class TestConfigModels:
    """Test configuration dataclass validation."""

    def test_default_constants(self):
        """Test the built-in defaults."""
        config = default_config()
        assert config.ledger == LedgerConfig(
            early_adopter_limit=106,
            early_adopter_tokens=300_000,
            standard_allocation=100_000,
            cost_multiplier=2.0,
            usd_per_token=0.000001,
            reset_period_days=30,
        )
        assert config.access.cache_ttl_seconds == 1.0
        assert config.routing == RoutingConfig(confirm_min=0.5, auto_route_min=0.8)
        assert config.generation_limits == {"image": 7, "video": 2, "song": 2, "tts": 10, "ppt": 1}

    def test_routing_thresholds_must_be_ordered(self):
        """Test that confirm_min above auto_route_min is rejected."""
        with pytest.raises(ValueError, match="confirm_min must be <= auto_route_min"):
            RoutingConfig(confirm_min=0.9, auto_route_min=0.5)

    def test_routing_threshold_range(self):
        """Test that thresholds outside [0, 1] are rejected."""
        with pytest.raises(ValueError, match="auto_route_min must be between 0 and 1"):
            RoutingConfig(auto_route_min=1.5)

    def test_access_ttl_must_be_positive(self):
        """Test that a zero TTL is rejected."""
        with pytest.raises(ValueError, match="cache_ttl_seconds must be > 0"):
            AccessConfig(cache_ttl_seconds=0)

    def test_unknown_generation_kind(self):
        """Test that unknown generation kinds are rejected."""
        with pytest.raises(ValueError, match="Unknown generation kind: hologram"):
            GuardConfig().get_generation_limit("hologram")


class TestEnvironment:
    """Test environment-driven selection."""

    def test_config_from_env_defaults(self, monkeypatch):
        """Test that no env var means defaults."""
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert load_config_from_env() == default_config()

    def test_config_from_env_path(self, monkeypatch, tmp_path):
        """Test that the env var selects a config file."""
        config_path = tmp_path / "guard.yaml"
        config_path.write_text("ledger:\n  early_adopter_limit: 10\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(config_path))

        assert load_config_from_env().ledger.early_adopter_limit == 10

    def test_db_path_from_env(self, monkeypatch):
        """Test database path selection."""
        monkeypatch.delenv(DB_ENV_VAR, raising=False)
        assert db_path_from_env() == DEFAULT_DB_PATH

        monkeypatch.setenv(DB_ENV_VAR, "/tmp/other.db")
        assert db_path_from_env() == "/tmp/other.db"

"""
Unit tests for the trirelay configuration system.
"""

from pathlib import Path

import pytest
import yaml

from trirelay.config import Config, get_config, load_config
from trirelay.config.loader import (
    apply_env_overrides,
    deep_merge,
    expand_env_references,
    load_yaml_file,
)
from trirelay.exceptions import ConfigurationError


# =============================================================================
# Schema Tests
# =============================================================================


class TestConfigSchema:
    """Tests for the Config Pydantic schema."""

    def test_default_config_is_valid(self):
        """Test that the default Config() is valid."""
        config = Config()
        assert config.relay.dedup_capacity == 1000
        assert config.attachments.retention_minutes == 30
        assert config.qq.request_timeout == 5.0
        assert config.audit_log.include_content is False

    def test_config_from_dict(self, sample_config):
        """Test Config validation from a dictionary."""
        config = Config.model_validate(sample_config)
        assert config.telegram.chat_id == "-100200300"
        assert config.qq.mode == "websocket"
        assert config.discord.missing_credentials() == []

    def test_invalid_values_rejected(self):
        """Test that invalid configuration values are rejected."""
        with pytest.raises(Exception):  # Pydantic ValidationError
            Config.model_validate({"relay": {"dedup_capacity": 1}})

    def test_missing_credentials(self):
        """Test reporting of empty required settings."""
        config = Config.model_validate({"qq": {"base_url": "http://localhost:3000"}})

        assert config.qq.mode == "http"
        assert config.qq.missing_credentials() == ["token", "group_id"]
        assert config.telegram.missing_credentials() == ["bot_token", "chat_id"]
        assert config.discord.missing_credentials() == ["webhook_url or bot_token"]

    def test_audit_log_defaults_to_trirelay_home(self, mock_trirelay_home):
        """Test that the default audit log lives under TRIRELAY_HOME."""
        config = Config()

        assert Path(config.audit_log.path) == mock_trirelay_home.resolve() / "audit.jsonl"


# =============================================================================
# Loader Tests
# =============================================================================


class TestLoaderHelpers:
    """Tests for loader helper functions."""

    def test_deep_merge(self):
        """Test nested dictionaries merge recursively."""
        base = {"qq": {"token": "a", "group_id": "1"}, "debug": {"show_gateway_frames": False}}
        override = {"qq": {"token": "b"}}

        assert deep_merge(base, override) == {
            "qq": {"token": "b", "group_id": "1"},
            "debug": {"show_gateway_frames": False},
        }

    def test_load_yaml_file_missing(self, temp_dir: Path):
        """Test that a missing file loads as empty."""
        assert load_yaml_file(temp_dir / "nope.yaml") == {}

    def test_load_yaml_file_invalid(self, temp_dir: Path):
        """Test that malformed YAML raises ConfigurationError."""
        path = temp_dir / "bad.yaml"
        path.write_text("qq: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_yaml_file(path)

    def test_load_yaml_file_not_mapping(self, temp_dir: Path):
        """Test that a top-level list is rejected."""
        path = temp_dir / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_yaml_file(path)

    def test_expand_env_references(self, monkeypatch):
        """Test ${NAME} expansion."""
        monkeypatch.setenv("RELAY_TEST_TOKEN", "s3cret")
        monkeypatch.delenv("RELAY_TEST_UNSET", raising=False)

        expanded = expand_env_references(
            {"a": "${RELAY_TEST_TOKEN}", "b": ["${RELAY_TEST_UNSET}"], "c": "literal ${X}"}
        )

        assert expanded == {"a": "s3cret", "b": [""], "c": "literal ${X}"}

    def test_apply_env_overrides(self, monkeypatch):
        """Test TRIRELAY_<SECTION>__<KEY> overrides."""
        monkeypatch.setenv("TRIRELAY_QQ__GROUP_ID", "00123")
        monkeypatch.setenv("TRIRELAY_DEBUG__SHOW_GATEWAY_FRAMES", "true")

        config = apply_env_overrides({"qq": {"group_id": "1"}})

        assert config["qq"]["group_id"] == "00123"
        assert config["debug"]["show_gateway_frames"] is True


class TestLoadConfig:
    """Tests for load_config and get_config."""

    def test_defaults_without_files(self, mock_trirelay_home):
        """Test loading with no config files."""
        config = load_config()
        assert config.relay.dedup_capacity == 1000

    def test_global_and_explicit_files(self, mock_trirelay_home, temp_dir, sample_config):
        """Test that the explicit file overrides the global one."""
        (mock_trirelay_home / "config.yaml").write_text(yaml.safe_dump(sample_config))
        explicit = temp_dir / "relay.yaml"
        explicit.write_text(yaml.safe_dump({"telegram": {"chat_id": "-1"}}))

        config = load_config(explicit)

        assert config.telegram.chat_id == "-1"
        assert config.telegram.bot_token == "123:telegram"
        assert config.qq.group_id == "123456"

    def test_explicit_file_missing(self, mock_trirelay_home, temp_dir):
        """Test that a missing --config file is an error."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(temp_dir / "missing.yaml")

    def test_env_overrides_files(self, mock_trirelay_home, monkeypatch, sample_config):
        """Test that environment variables win over files."""
        (mock_trirelay_home / "config.yaml").write_text(yaml.safe_dump(sample_config))
        monkeypatch.setenv("TRIRELAY_QQ__TOKEN", "from-env")
        monkeypatch.setenv("TRIRELAY_RELAY__DEDUP_CAPACITY", "50")

        config = load_config()

        assert config.qq.token == "from-env"
        assert config.relay.dedup_capacity == 50

        assert load_config(skip_env=True).qq.token == "napcat"

    def test_validation_error(self, mock_trirelay_home):
        """Test that invalid values surface as ConfigurationError."""
        (mock_trirelay_home / "config.yaml").write_text("attachments:\n  retention_minutes: 0\n")

        with pytest.raises(ConfigurationError, match="validation failed"):
            load_config()

    def test_get_config_is_cached(self, mock_trirelay_home):
        """Test the cached config singleton."""
        first = get_config()
        assert get_config() is first
        assert get_config(reload=True) is not first

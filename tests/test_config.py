"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from tfrecover.config import (
    DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS,
    DEFAULT_MAX_ATTEMPTS,
    Config,
    ConfigurationError,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test the default configuration is valid."""
        config = Config()

        assert config.terraform_bin == "terraform"
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert config.fail_fast is False
        assert config.destructive_resource_patterns == DEFAULT_DESTRUCTIVE_RESOURCE_PATTERNS

    @pytest.mark.parametrize("max_attempts", [0, 21])
    def test_max_attempts_bounds(self, max_attempts: int) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_attempts=max_attempts)

        assert "TF_MAX_ATTEMPTS" in str(exc_info.value)

    def test_parallelism_bounds(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(parallelism=0)

        assert "TF_PARALLELISM" in str(exc_info.value)

    def test_errors_are_aggregated(self) -> None:
        """Test that every invalid field is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(terraform_bin="", retry_backoff_seconds=-1, apply_timeout_seconds=0)

        message = str(exc_info.value)
        assert "TERRAFORM_BIN" in message
        assert "TF_RETRY_BACKOFF_SECONDS" in message
        assert "TF_APPLY_TIMEOUT" in message

    def test_invalid_destructive_pattern(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            Config(destructive_resource_patterns=("azurerm_[",))

        assert "azurerm_[" in str(exc_info.value)


class TestConfigFromEnv:
    """Tests for loading configuration from environment."""

    def test_from_env_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()

        assert config == Config()

    def test_from_env_overrides(self) -> None:
        env = {
            "TERRAFORM_BIN": "/opt/terraform/1.7/terraform",
            "TF_MAX_ATTEMPTS": "3",
            "TF_PARALLELISM": "25",
            "TF_FAIL_FAST": "true",
            "TF_RETRY_BACKOFF_SECONDS": "2.5",
            "TF_APPLY_TIMEOUT": "3600",
            "DESTRUCTIVE_RESOURCE_PATTERNS": "azurerm_storage_account, azurerm_netapp_.*,",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.terraform_bin == "/opt/terraform/1.7/terraform"
        assert config.max_attempts == 3
        assert config.parallelism == 25
        assert config.fail_fast is True
        assert config.retry_backoff_seconds == 2.5
        assert config.apply_timeout_seconds == 3600
        assert config.destructive_resource_patterns == (
            "azurerm_storage_account",
            "azurerm_netapp_.*",
        )

    def test_invalid_integer(self) -> None:
        with patch.dict(os.environ, {"TF_MAX_ATTEMPTS": "many"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "TF_MAX_ATTEMPTS must be an integer" in str(exc_info.value)

    def test_out_of_range_from_env(self) -> None:
        with patch.dict(os.environ, {"TF_PARALLELISM": "500"}, clear=True):
            with pytest.raises(ConfigurationError):
                Config.from_env()

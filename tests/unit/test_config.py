"""
Unit tests for configuration module.

Tests cover defaults, YAML files, environment variable layering,
validation errors and persisting settings.
"""

from pathlib import Path

import pytest
import yaml
from _pytest.monkeypatch import MonkeyPatch

from waffle.config import (
    DEFAULT_MODEL_ID,
    Settings,
    config_file_paths,
    get_settings,
    load_settings,
    save_settings,
)
from waffle.errors import ConfigurationError, FileAccessError


def _write_config(path: str, data: dict[str, object]) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    _ = target.write_text(yaml.safe_dump(data))


class TestSettingsDefaults:
    """Tests for default values."""

    def test_defaults(self, mock_settings: Settings, mock_env_vars: dict[str, str]) -> None:
        """Test that an empty environment yields the defaults."""
        assert mock_settings.bedrock.region == "us-east-1"
        assert mock_settings.bedrock.model_id == DEFAULT_MODEL_ID
        assert mock_settings.bedrock.max_retries == 3
        assert mock_settings.storage.retention_days == 90
        assert mock_settings.storage.session_dir == mock_env_vars["WAFFLE_STORAGE__SESSION_DIR"]
        assert mock_settings.logging.level == "INFO"
        assert mock_settings.logging.format == "json"
        assert mock_settings.wafr.default_scope == "workload"
        assert mock_settings.security.redact_sensitive_data is True
        assert mock_settings.max_file_size_bytes == 10 * 1024 * 1024

    def test_home_expanded(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test that ``~`` is expanded in storage paths."""
        _ = mock_env_vars
        monkeypatch.setenv("WAFFLE_STORAGE__SESSION_DIR", "~/reviews")

        settings = Settings()

        assert not settings.storage.session_dir.startswith("~")
        assert settings.storage.session_dir.endswith("reviews")


class TestSettingsLayering:
    """Tests for source precedence."""

    def test_yaml_file(self, mock_env_vars: dict[str, str]) -> None:
        """Test that the config file supplies values."""
        _write_config(
            mock_env_vars["WAFFLE_CONFIG_FILE"],
            {"bedrock": {"model_id": "custom-model", "max_retries": 5}, "logging": {"format": "text"}},
        )

        settings = Settings()

        assert settings.bedrock.model_id == "custom-model"
        assert settings.bedrock.max_retries == 5
        assert settings.logging.format == "text"

    def test_env_overrides_yaml(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test that nested environment variables beat the config file."""
        _write_config(mock_env_vars["WAFFLE_CONFIG_FILE"], {"bedrock": {"max_retries": 5}})
        monkeypatch.setenv("WAFFLE_BEDROCK__MAX_RETRIES", "7")

        assert Settings().bedrock.max_retries == 7

    def test_aws_environment(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test AWS_PROFILE, AWS_REGION and WAFFLE_LOG_LEVEL."""
        _ = mock_env_vars
        monkeypatch.setenv("AWS_PROFILE", "dev")
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        monkeypatch.setenv("WAFFLE_LOG_LEVEL", "warn")

        settings = Settings()

        assert settings.aws.profile == "dev"
        assert settings.aws.region == "eu-west-1"
        assert settings.bedrock.region == "eu-west-1"
        assert settings.logging.level == "WARNING"

    def test_aws_region_keeps_configured_bedrock_region(
        self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch
    ) -> None:
        """Test that an explicit Bedrock region is not replaced."""
        _write_config(mock_env_vars["WAFFLE_CONFIG_FILE"], {"bedrock": {"region": "us-west-2"}})
        monkeypatch.setenv("AWS_REGION", "eu-west-1")

        assert Settings().bedrock.region == "us-west-2"

    def test_overrides_win(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test that caller overrides beat the environment."""
        _ = mock_env_vars
        monkeypatch.setenv("WAFFLE_LOG_LEVEL", "ERROR")

        settings = load_settings({"logging": {"level": "DEBUG"}})

        assert settings.logging.level == "DEBUG"

    def test_config_file_paths(self, monkeypatch: MonkeyPatch) -> None:
        """Test the default and explicit config locations."""
        monkeypatch.delenv("WAFFLE_CONFIG_FILE", raising=False)
        defaults = config_file_paths()
        assert [p.name for p in defaults] == ["config.yaml", "config.yaml"]
        assert defaults[0].parent.name == ".waffle"

        monkeypatch.setenv("WAFFLE_CONFIG_FILE", "/etc/waffle.yaml")
        assert config_file_paths() == [Path("/etc/waffle.yaml")]

    def test_get_settings_cached(self, mock_env_vars: dict[str, str]) -> None:
        """Test that get_settings returns one shared instance."""
        _ = mock_env_vars

        assert get_settings() is get_settings()


class TestSettingsValidation:
    """Tests for Settings validation."""

    def test_invalid_log_level_raises(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test that an invalid log level raises ConfigurationError."""
        _ = mock_env_vars
        monkeypatch.setenv("WAFFLE_LOG_LEVEL", "INVALID")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = load_settings()

        assert exc_info.value.config_key == "logging.level"

    def test_invalid_log_format_raises(self, mock_env_vars: dict[str, str]) -> None:
        """Test that an invalid log format raises ConfigurationError."""
        _write_config(mock_env_vars["WAFFLE_CONFIG_FILE"], {"logging": {"format": "xml"}})

        with pytest.raises(ConfigurationError) as exc_info:
            _ = load_settings()

        assert exc_info.value.config_key == "logging.format"

    def test_invalid_scope_raises(self, mock_env_vars: dict[str, str], monkeypatch: MonkeyPatch) -> None:
        """Test that an unknown default scope raises ConfigurationError."""
        _ = mock_env_vars
        monkeypatch.setenv("WAFFLE_WAFR__DEFAULT_SCOPE", "account")

        with pytest.raises(ConfigurationError) as exc_info:
            _ = load_settings()

        assert "wafr.default_scope" in str(exc_info.value)

    def test_negative_retries_raises(self, mock_env_vars: dict[str, str]) -> None:
        """Test that field constraints surface as ConfigurationError."""
        _ = mock_env_vars

        with pytest.raises(ConfigurationError) as exc_info:
            _ = load_settings({"bedrock": {"max_retries": -1}})

        assert exc_info.value.config_key == "bedrock.max_retries"

    def test_invalid_temperature_raises(self, mock_env_vars: dict[str, str]) -> None:
        """Test the temperature bounds."""
        _ = mock_env_vars

        with pytest.raises(ConfigurationError):
            _ = load_settings({"bedrock": {"temperature": 1.5}})


class TestSaveSettings:
    """Tests for save_settings."""

    def test_save_and_reload(self, mock_env_vars: dict[str, str], tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
        """Test that saved settings load back unchanged."""
        _ = mock_env_vars
        settings = load_settings({"bedrock": {"model_id": "saved-model"}, "storage": {"retention_days": 0}})
        path = tmp_path / "saved" / "config.yaml"

        written = save_settings(settings, path)

        assert written == path
        monkeypatch.setenv("WAFFLE_CONFIG_FILE", str(path))
        reloaded = Settings()
        assert reloaded.bedrock.model_id == "saved-model"
        assert reloaded.storage.retention_days == 0

    def test_save_to_directory_fails(self, mock_settings: Settings, tmp_path: Path) -> None:
        """Test that an unwritable target raises FileAccessError."""
        with pytest.raises(FileAccessError):
            _ = save_settings(mock_settings, tmp_path)

"""
Configuration management for Waffle.

Settings are a pydantic-settings model with one nested section per
concern. Values are layered, lowest precedence first:

    1. Defaults (below)
    2. YAML config files: ~/.waffle/config.yaml, then ./config.yaml
       (or only the file named by WAFFLE_CONFIG_FILE)
    3. WAFFLE_<SECTION>__<KEY> environment variables
       (e.g. WAFFLE_BEDROCK__MAX_RETRIES=5)
    4. AWS_PROFILE, AWS_REGION and WAFFLE_LOG_LEVEL
    5. Caller overrides (CLI flags), passed to ``load_settings``

AWS_REGION also replaces the Bedrock region while that is still the default.

Example config.yaml:
    bedrock:
      region: us-west-2
      model_id: us.anthropic.claude-sonnet-4-20250514-v1:0
      max_retries: 3
    storage:
      session_dir: ~/.waffle/sessions
      retention_days: 90
    logging:
      level: INFO
      format: json

Usage:
    from waffle.config import get_settings

    settings = get_settings()
    print(settings.bedrock.model_id)
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from waffle.errors import ConfigurationError, FileAccessError

DEFAULT_REGION = "us-east-1"
DEFAULT_MODEL_ID = "us.anthropic.claude-sonnet-4-20250514-v1:0"
DEFAULT_CONFIG_PATH = "~/.waffle/config.yaml"
LOCAL_CONFIG_PATH = "config.yaml"
CONFIG_FILE_ENV = "WAFFLE_CONFIG_FILE"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
VALID_LOG_FORMATS = ("json", "text")
VALID_SCOPES = ("workload", "pillar", "question")


def _expand(path: str) -> str:
    return str(Path(path).expanduser()) if path else path


class BedrockSettings(BaseModel):
    """Amazon Bedrock settings."""

    region: str = DEFAULT_REGION
    model_id: str = DEFAULT_MODEL_ID
    max_retries: int = Field(default=3, ge=0)
    timeout: int = Field(default=60, gt=0, description="Per-call timeout in seconds")
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)


class StorageSettings(BaseModel):
    """Session and log storage settings."""

    session_dir: str = "~/.waffle/sessions"
    log_dir: str = "~/.waffle/logs"
    retention_days: int = Field(default=90, ge=0, description="0 keeps sessions forever")

    @field_validator("session_dir", "log_dir")
    @classmethod
    def expand_home(cls, v: str) -> str:
        """Expand ``~`` in directory paths."""
        return _expand(v)


class IaCSettings(BaseModel):
    """IaC analysis settings."""

    framework: str = "terraform"
    max_file_size_mb: int = Field(default=10, gt=0)
    max_files: int = Field(default=10000, gt=0)
    plan_file_path: str = ""

    @field_validator("plan_file_path")
    @classmethod
    def expand_plan_path(cls, v: str) -> str:
        """Expand ``~`` in the plan file path."""
        return _expand(v)


class WAFRSettings(BaseModel):
    """Well-Architected Tool settings."""

    default_scope: str = "workload"
    default_lens: str = "wellarchitected"

    @field_validator("default_scope")
    @classmethod
    def validate_scope(cls, v: str) -> str:
        """
        Validate the default review scope.

        Raises:
            ConfigurationError: If the scope is not workload, pillar or question
        """
        value = v.strip().lower()
        if value not in VALID_SCOPES:
            raise ConfigurationError(
                f"wafr.default_scope '{v}' is not valid. Must be one of: {', '.join(VALID_SCOPES)}",
                config_key="wafr.default_scope",
                reason=f"Invalid scope: {v}",
            )
        return value


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: str = "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """
        Validate and normalise the log level ("WARN" becomes "WARNING").

        Raises:
            ConfigurationError: If the level is not recognised
        """
        value = v.strip().upper()
        if value == "WARN":
            value = "WARNING"
        if value not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"logging.level '{v}' is not valid. Must be one of: {', '.join(VALID_LOG_LEVELS)}",
                config_key="logging.level",
                reason=f"Invalid log level: {v}",
            )
        return value

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """
        Validate the log format.

        Raises:
            ConfigurationError: If the format is not json or text
        """
        value = v.strip().lower()
        if value not in VALID_LOG_FORMATS:
            raise ConfigurationError(
                f"logging.format '{v}' is not valid. Must be one of: {', '.join(VALID_LOG_FORMATS)}",
                config_key="logging.format",
                reason=f"Invalid log format: {v}",
            )
        return value


class SecuritySettings(BaseModel):
    """Data handling settings."""

    redact_sensitive_data: bool = True
    encrypt_sessions: bool = True


class AWSSettings(BaseModel):
    """AWS credential selection."""

    profile: str = ""
    region: str = ""


class AWSEnvironmentSource(PydanticBaseSettingsSource):
    """Reads the unprefixed AWS_PROFILE and AWS_REGION plus WAFFLE_LOG_LEVEL."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        aws: dict[str, str] = {}
        if profile := os.environ.get("AWS_PROFILE"):
            aws["profile"] = profile
        if region := os.environ.get("AWS_REGION"):
            aws["region"] = region
        if aws:
            data["aws"] = aws
        if level := os.environ.get("WAFFLE_LOG_LEVEL"):
            data["logging"] = {"level": level}
        return data


def config_file_paths() -> list[Path]:
    """
    YAML files read by ``Settings``, lowest precedence first.

    WAFFLE_CONFIG_FILE, when set, replaces the default locations.
    """
    explicit = os.environ.get(CONFIG_FILE_ENV)
    if explicit:
        return [Path(explicit).expanduser()]
    return [Path(DEFAULT_CONFIG_PATH).expanduser(), Path(LOCAL_CONFIG_PATH)]


class Settings(BaseSettings):
    """
    Waffle configuration settings.

    Attributes:
        bedrock: Model adapter settings
        storage: Session and log locations
        iac: IaC analysis limits
        wafr: Review defaults
        logging: Log level and format
        security: Redaction and session protection flags
        aws: Profile and region for AWS clients
    """

    model_config = SettingsConfigDict(
        env_prefix="WAFFLE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    bedrock: BedrockSettings = Field(default_factory=BedrockSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    iac: IaCSettings = Field(default_factory=IaCSettings)
    wafr: WAFRSettings = Field(default_factory=WAFRSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Order sources from highest to lowest precedence."""
        return (
            init_settings,
            AWSEnvironmentSource(settings_cls),
            env_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=config_file_paths()),
        )

    @model_validator(mode="after")
    def apply_aws_region(self) -> "Settings":
        """Use AWS_REGION for Bedrock unless a Bedrock region was configured."""
        region = os.environ.get("AWS_REGION")
        if region and self.bedrock.region == DEFAULT_REGION:
            self.bedrock.region = region
        return self

    @property
    def max_file_size_bytes(self) -> int:
        """IaC per-file size limit in bytes."""
        return self.iac.max_file_size_mb * 1024 * 1024


def load_settings(overrides: dict[str, Any] | None = None) -> Settings:
    """
    Load settings, applying caller overrides last.

    Args:
        overrides: Nested section values, e.g.
            ``{"bedrock": {"model_id": "..."}, "logging": {"level": "DEBUG"}}``

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If any value is invalid or a config file is
            unreadable
    """
    try:
        return Settings(**(overrides or {}))
    except ConfigurationError:
        raise
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            config_key=key or None,
            reason=str(first.get("msg", e)),
        ) from e
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load configuration: {e}",
            reason=str(e),
        ) from e


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If configuration is invalid

    Example:
        >>> from waffle.config import get_settings
        >>> get_settings().bedrock.max_retries
        3
    """
    return load_settings()


def save_settings(settings: Settings, path: str | Path = DEFAULT_CONFIG_PATH) -> Path:
    """
    Write settings as YAML.

    Args:
        settings: Settings to persist
        path: Destination file (``~`` is expanded, parents are created)

    Returns:
        Path written

    Raises:
        FileAccessError: If the file cannot be written
    """
    target = Path(path).expanduser()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(settings.model_dump(mode="json"), handle, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise FileAccessError(str(target), "write", str(e)) from e
    return target

"""Configuration management for the trialgate control plane.

Provides centralized configuration with validation, type safety, and environment variable support.
"""

from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic.types import PositiveFloat
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TENSORBOARD_COMMAND = "tensorboard --logdir_spec {logdir} --port {port} --host {host}"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="TRIALGATE_LOG_")

    level: str = "INFO"
    format: str = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{extra[component]}</cyan> - <level>{message}</level>"
    )
    file_path: Optional[Path] = None
    max_file_size: str = "10 MB"
    retention: str = "30 days"

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class ServerConfig(BaseSettings):
    """REST listener configuration."""

    model_config = SettingsConfigDict(env_prefix="TRIALGATE_SERVER_")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    experiment_mode: Literal["new", "resume"] = "new"
    # "package.module:callable" returning (manager, datastore)
    manager_factory: Optional[str] = None
    log_level: str = "info"

    @field_validator("manager_factory")
    @classmethod
    def validate_manager_factory(cls, v):
        if v is not None and ":" not in v:
            raise ValueError("manager_factory must look like 'package.module:callable'")
        return v


class TensorBoardConfig(BaseSettings):
    """Visualization session configuration."""

    model_config = SettingsConfigDict(env_prefix="TRIALGATE_TB_")

    command: str = DEFAULT_TENSORBOARD_COMMAND
    host: str = "0.0.0.0"
    advertise_host: Optional[str] = None
    port_min: int = Field(default=6006, ge=1, le=65535)
    port_max: int = Field(default=6106, ge=1, le=65535)
    trials_dir: Path = Path("trials")
    log_dir: Path = Path("logs/tensorboard")
    spawn_timeout: PositiveFloat = 30.0
    terminate_timeout: PositiveFloat = 10.0
    ready_check: bool = True
    allow_command_override: bool = True

    @model_validator(mode="after")
    def validate_port_range(self):
        if self.port_min > self.port_max:
            raise ValueError("port_min must not exceed port_max")
        return self


class MonitoringConfig(BaseSettings):
    """Monitoring and telemetry configuration."""

    model_config = SettingsConfigDict(env_prefix="TRIALGATE_MONITORING_")

    enable_prometheus: bool = False


class GatewayConfig(BaseSettings):
    """Main configuration combining all subsystems."""

    model_config = SettingsConfigDict(
        env_prefix="TRIALGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    tensorboard: TensorBoardConfig = Field(default_factory=TensorBoardConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "GatewayConfig":
        """Load configuration from YAML file."""
        with open(yaml_path, "r") as f:
            config_dict = yaml.safe_load(f) or {}

        return cls(**config_dict)

    def to_yaml(self, yaml_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        with open(yaml_path, "w") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)


# Global configuration instance
config = GatewayConfig()


def get_config() -> GatewayConfig:
    """Get the global configuration instance."""
    return config


def reload_config(**overrides: Any) -> GatewayConfig:
    """Reload configuration with overrides."""
    global config
    config = GatewayConfig(**overrides)
    return config

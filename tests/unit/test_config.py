"""Unit tests for configuration management."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from trialgate.config import (
    DEFAULT_TENSORBOARD_COMMAND,
    GatewayConfig,
    LoggingConfig,
    MonitoringConfig,
    ServerConfig,
    TensorBoardConfig,
    reload_config,
    get_config,
)


class TestLoggingConfig:
    """Test logging configuration."""

    def test_valid_config(self):
        config = LoggingConfig(level="INFO", file_path="/tmp/trialgate.log")
        assert config.level == "INFO"
        assert config.file_path == Path("/tmp/trialgate.log")

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            LoggingConfig(level="INVALID")

    def test_log_level_normalization(self):
        config = LoggingConfig(level="debug")
        assert config.level == "DEBUG"

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("TRIALGATE_LOG_LEVEL", "error")
        assert LoggingConfig().level == "ERROR"


class TestServerConfig:
    """Test REST listener configuration."""

    def test_defaults(self):
        config = ServerConfig()
        assert config.port == 8080
        assert config.experiment_mode == "new"
        assert config.manager_factory is None

    def test_port_range(self):
        with pytest.raises(ValidationError):
            ServerConfig(port=0)
        with pytest.raises(ValidationError):
            ServerConfig(port=70000)

    def test_experiment_mode_must_be_known(self):
        assert ServerConfig(experiment_mode="resume").experiment_mode == "resume"
        with pytest.raises(ValidationError):
            ServerConfig(experiment_mode="restart")

    def test_manager_factory_format(self):
        config = ServerConfig(manager_factory="engine.bootstrap:build")
        assert config.manager_factory == "engine.bootstrap:build"
        with pytest.raises(ValidationError):
            ServerConfig(manager_factory="engine.bootstrap.build")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("TRIALGATE_SERVER_PORT", "9090")
        monkeypatch.setenv("TRIALGATE_SERVER_EXPERIMENT_MODE", "resume")
        config = GatewayConfig()
        assert config.server.port == 9090
        assert config.server.experiment_mode == "resume"


class TestTensorBoardConfig:
    """Test TensorBoard session configuration."""

    def test_defaults(self):
        config = TensorBoardConfig()
        assert config.command == DEFAULT_TENSORBOARD_COMMAND
        assert config.port_min <= config.port_max
        assert config.allow_command_override is True

    def test_port_range_order(self):
        with pytest.raises(ValidationError):
            TensorBoardConfig(port_min=7000, port_max=6000)

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValidationError):
            TensorBoardConfig(spawn_timeout=0)
        with pytest.raises(ValidationError):
            TensorBoardConfig(terminate_timeout=-1)


class TestGatewayConfig:
    """Test the combined configuration."""

    def test_nested_sections(self):
        config = GatewayConfig(
            server={"port": 9000},
            tensorboard={"port_min": 7000, "port_max": 7010},
        )
        assert isinstance(config.logging, LoggingConfig)
        assert isinstance(config.monitoring, MonitoringConfig)
        assert config.server.port == 9000
        assert config.tensorboard.port_max == 7010
        assert config.monitoring.enable_prometheus is False

    def test_invalid_nested_section(self):
        with pytest.raises(ValidationError):
            GatewayConfig(server={"port": -1})

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "gateway.yaml"
        original = GatewayConfig(
            server={"port": 9001, "experiment_mode": "resume", "manager_factory": "eng:build"},
            tensorboard={"trials_dir": "/data/trials", "spawn_timeout": 5.0},
        )
        original.to_yaml(path)

        loaded = GatewayConfig.from_yaml(path)
        assert loaded.server.port == 9001
        assert loaded.server.experiment_mode == "resume"
        assert loaded.server.manager_factory == "eng:build"
        assert loaded.tensorboard.trials_dir == Path("/data/trials")
        assert loaded.tensorboard.spawn_timeout == 5.0

    def test_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert GatewayConfig.from_yaml(path).server.port == 8080

    def test_reload_config_replaces_global(self):
        previous = get_config()
        try:
            reloaded = reload_config(server={"port": 8181})
            assert get_config() is reloaded
            assert reloaded.server.port == 8181
        finally:
            reload_config(**previous.model_dump())

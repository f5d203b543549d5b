"""uvicorn-backed listener hosting the gateway application."""

from __future__ import annotations

import importlib
from typing import Any, Callable, Optional, Tuple

import uvicorn

from ..config import GatewayConfig, get_config
from ..contracts import DataStore, ExperimentMode, Manager
from ..exceptions import ConfigurationError
from ..logging import get_logger
from ..tensorboard import TensorBoardSessionManager
from .handler import create_app

logger = get_logger("server")


def resolve_factory(path: str) -> Callable[..., Any]:
    """Import ``package.module:callable``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            "factory path must look like 'package.module:callable'", details={"path": path}
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import {module_name}: {exc}") from exc
    factory = module
    for part in attr.split("."):
        factory = getattr(factory, part, None)
        if factory is None:
            raise ConfigurationError(f"{path} does not exist")
    if not callable(factory):
        raise ConfigurationError(f"{path} is not callable")
    return factory


def load_collaborators(config: GatewayConfig) -> Tuple[Manager, DataStore]:
    """Build the engine and datastore from ``server.manager_factory``."""
    path = config.server.manager_factory
    if not path:
        raise ConfigurationError(
            "no manager factory configured; set server.manager_factory or pass --manager"
        )
    result = resolve_factory(path)(config)
    try:
        manager, datastore = result
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"{path} must return a (manager, datastore) pair", details={"got": type(result).__name__}
        ) from exc
    return manager, datastore


class RestServer:
    """Owns the gateway app and the uvicorn server it runs on."""

    def __init__(
        self,
        manager: Manager,
        datastore: DataStore,
        config: Optional[GatewayConfig] = None,
        sessions: Optional[TensorBoardSessionManager] = None,
    ):
        self.config = config or get_config()
        self.app = create_app(
            manager,
            datastore,
            experiment_mode=ExperimentMode(self.config.server.experiment_mode),
            sessions=sessions,
            shutdown=self.stop,
            config=self.config,
        )
        self._server: Optional[uvicorn.Server] = None

    @property
    def address(self) -> str:
        return f"http://{self.config.server.host}:{self.config.server.port}"

    def _build_server(self) -> uvicorn.Server:
        uv_config = uvicorn.Config(
            self.app,
            host=self.config.server.host,
            port=self.config.server.port,
            log_level=self.config.server.log_level,
        )
        return uvicorn.Server(uv_config)

    def run(self) -> None:
        """Serve until :meth:`stop` is called or the process is interrupted."""
        self._server = self._build_server()
        logger.info("REST server listening on {}", self.address)
        self._server.run()
        logger.info("REST server stopped")

    async def start(self) -> None:
        """Serve inside an already running event loop."""
        self._server = self._build_server()
        logger.info("REST server listening on {}", self.address)
        await self._server.serve()

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

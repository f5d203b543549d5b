"""Logging system for trialgate using Loguru.

Provides structured logging with configurable levels and file rotation.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .config import get_config


class GatewayLogger:
    """Gateway logging system with per-component child loggers."""

    def configure(self, config=None) -> None:
        """Configure logging based on provided config."""
        if config is None:
            config = get_config()

        # Remove default and previously installed handlers
        logger.remove()
        logger.configure(extra={"component": "trialgate"})

        logger.add(
            sys.stderr,
            level=config.logging.level,
            format=config.logging.format,
            colorize=True,
            enqueue=True,  # Thread-safe
        )

        if config.logging.file_path:
            file_path = Path(config.logging.file_path)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            logger.add(
                str(file_path),
                level=config.logging.level,
                format=config.logging.format,
                rotation=config.logging.max_file_size,
                retention=config.logging.retention,
                encoding="utf-8",
                enqueue=True,
            )

        logger.debug(
            "trialgate logging configured (level={}, file={})",
            config.logging.level,
            config.logging.file_path,
        )

    def log_request(self, method: str, url: str, body: Any) -> None:
        """Log an inbound request before dispatch."""
        logger.bind(component="rest").info(
            "{}: {}: body:\n{}", method, url, _format_body(body)
        )

    def log_error(self, error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
        """Log error with context."""
        logger.bind(component="trialgate").error(
            "{}: {} (context={})", type(error).__name__, error, context or {}
        )

    def create_child_logger(self, name: str) -> "GatewayChildLogger":
        """Create a child logger with specific context."""
        return GatewayChildLogger(name, self)


class GatewayChildLogger:
    """Child logger with specific context."""

    def __init__(self, name: str, parent: GatewayLogger):
        self.name = name
        self.parent = parent
        self.logger = logger.bind(component=name)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.error(message, *args, **kwargs)

    def exception(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.exception(message, *args, **kwargs)

    def critical(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.critical(message, *args, **kwargs)


def _format_body(body: Any) -> str:
    if body is None or body == b"":
        return "{}"
    if isinstance(body, (bytes, bytearray)):
        try:
            body = json.loads(body)
        except ValueError:
            return body.decode("utf-8", errors="replace")
    try:
        return json.dumps(body, indent=4, default=str)
    except (TypeError, ValueError):
        return repr(body)


# Global logger instance
gateway_logger = GatewayLogger()


def get_logger(name: Optional[str] = None) -> GatewayChildLogger:
    """Get a logger instance for a specific component."""
    return gateway_logger.create_child_logger(name or "trialgate")


def setup_logging(config=None) -> None:
    """Setup logging for the entire gateway."""
    gateway_logger.configure(config)


def log_request(method: str, url: str, body: Any) -> None:
    gateway_logger.log_request(method, url, body)


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
    """Log error with context."""
    gateway_logger.log_error(error, context)


# Configure on import
setup_logging()

"""Mapping from gateway errors to HTTP status codes and bodies."""

from __future__ import annotations

from typing import Dict, Tuple

from ..exceptions import GatewayError, NotFoundError


def error_message(error: BaseException) -> str:
    if isinstance(error, GatewayError):
        message = error.message
    else:
        message = str(error)
    return message or type(error).__name__


def error_response(error: BaseException) -> Tuple[int, Dict[str, str]]:
    """Return ``(status, body)`` for any error raised while serving a request.

    NotFoundError is the only 404; every other failure is a 500.
    """
    status = 404 if isinstance(error, NotFoundError) else 500
    return status, {"error": error_message(error)}

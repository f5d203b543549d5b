"""REST surface of the gateway."""

from .errors import error_response
from .handler import RestHandler, create_app
from .server import RestServer, load_collaborators, resolve_factory

__all__ = [
    "RestHandler",
    "RestServer",
    "create_app",
    "error_response",
    "load_collaborators",
    "resolve_factory",
]

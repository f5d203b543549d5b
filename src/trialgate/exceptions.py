"""Custom exceptions for the trialgate control plane.

Provides structured error handling with specific exception types for the
failure modes the gateway distinguishes when mapping errors to HTTP status
codes.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for all trialgate errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class NotFoundError(GatewayError):
    """Raised when an entity id (trial job, endpoint, metadata key) cannot be resolved."""
    pass


class ValidationError(GatewayError):
    """Raised when request input fails validation."""
    pass


class ConfigurationError(GatewayError):
    """Raised when there's a configuration-related error."""
    pass


class DelegatedCallError(GatewayError):
    """Raised when a collaborator call fails with a non-gateway exception."""
    pass


class DatastoreInitError(GatewayError):
    """Raised when the datastore cannot be initialized. Fatal for the gateway."""
    pass


class ServiceStoppedError(GatewayError):
    """Raised for requests that arrive after the gateway stopped accepting traffic."""
    pass


class SpawnError(GatewayError):
    """Raised when a TensorBoard process fails to start or become ready."""
    pass


class TerminationError(GatewayError):
    """Raised when a TensorBoard process cannot be terminated."""
    pass


class SessionCleanupError(GatewayError):
    """Raised when draining TensorBoard sessions left processes behind."""
    pass


def wrap_delegated_error(error: BaseException, operation: str) -> GatewayError:
    """Return ``error`` unchanged if it is a gateway error, else wrap it."""
    if isinstance(error, GatewayError):
        return error
    message = str(error) or type(error).__name__
    return DelegatedCallError(
        message,
        details={"operation": operation, "original_error": type(error).__name__},
    )


def validate_job_id(job_id: str, name: str = "job_id") -> str:
    """Validate a trial job id token used in paths and logdir specs."""
    token = str(job_id or "").strip()
    if not token:
        raise ValidationError(f"{name} must not be empty", details={"parameter": name})
    if not all(ch.isalnum() or ch in "_.-" for ch in token) or token in {".", ".."}:
        raise ValidationError(
            f"{name} contains invalid characters",
            details={"value": token, "parameter": name},
        )
    return token

"""
Error types for topology construction and provisioning.

Configuration and validation errors are raised before any provider call.
Provider errors are raised by a provider and turned into a ProvisioningError
by the driver, which stops at the first one.
"""

from typing import Any, Dict, List, Optional


class ErrorCode:
    """Standard error codes."""

    CONFIG_ERROR = "CONFIG_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVISIONING_ERROR = "PROVISIONING_ERROR"


class NotesAppError(Exception):
    """
    Base error with error code and message.

    Carries structured details so callers (CLI, logs) can report them.
    """

    def __init__(self, error_code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured output."""
        return {
            "errorCode": self.error_code,
            "message": self.message,
            **self.details,
        }


class ConfigError(NotesAppError):
    """Missing or invalid build-time configuration."""

    def __init__(self, message: str, **details: Any):
        super().__init__(ErrorCode.CONFIG_ERROR, message, details)


class ValidationError(NotesAppError):
    """The resource graph is malformed (duplicates, dangling references)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(ErrorCode.VALIDATION_ERROR, message, details)


class ProviderError(NotesAppError):
    """A provider call failed for a given resource and operation."""

    def __init__(self, resource: str, operation: str, message: str):
        self.resource = resource
        self.operation = operation
        super().__init__(
            ErrorCode.PROVIDER_ERROR,
            f"{operation} failed for {resource}: {message}",
            {"resource": resource, "operation": operation},
        )


class ProvisioningError(NotesAppError):
    """
    Provisioning stopped at the first unrecoverable provider error.

    `completed` lists the steps that were applied before the failure; they are
    left in place for the operator to inspect or for a re-run to converge.
    """

    def __init__(self, resource: str, operation: str, completed: List[str], cause: str):
        self.resource = resource
        self.operation = operation
        self.completed = list(completed)
        super().__init__(
            ErrorCode.PROVISIONING_ERROR,
            f"Provisioning stopped at {operation} {resource} after {len(self.completed)} step(s): {cause}",
            {"resource": resource, "operation": operation, "completed": self.completed},
        )

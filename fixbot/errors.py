"""
Error Taxonomy
Exceptions shared by the message-processing core
"""

from typing import Any, Dict, Optional


class FixbotError(Exception):
    """
    Base class for all service errors.

    Attributes:
        code: Stable machine-readable error code
        retryable: Whether the failed unit of work may succeed when retried
    """

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, retryable: Optional[bool] = None):
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ConfigurationError(FixbotError):
    """Fatal misconfiguration detected at process startup."""

    code = "CONFIGURATION_ERROR"


class ValidationError(FixbotError):
    """
    Malformed unit of work.

    Never retried: the unit is acknowledged as handled so the channel
    does not redeliver an unprocessable payload forever.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class TransientDependencyError(FixbotError):
    """Store or outbound API hiccup. Retryable."""

    code = "DEPENDENCY_UNAVAILABLE"
    retryable = True

    def __init__(self, dependency: str, message: Optional[str] = None):
        self.dependency = dependency
        super().__init__(message or f"Dependency unavailable: {dependency}")


class CircuitOpenError(TransientDependencyError):
    """Raised when a call is rejected because the dependency's circuit is open."""

    code = "CIRCUIT_OPEN"

    def __init__(self, service_name: str, retry_after: Optional[float] = None):
        self.service_name = service_name
        self.retry_after = retry_after
        message = f"Circuit breaker open for {service_name}"
        if retry_after is not None:
            message += f". Retry in {int(retry_after)}s"
        super().__init__(service_name, message)


class ConcurrencyConflict(FixbotError):
    """
    Optimistic concurrency check failed.

    The stored session version no longer matches the version the caller
    read. Retryable with freshly read state.
    """

    code = "CONCURRENCY_CONFLICT"
    retryable = True

    def __init__(self, subject: str, expected_version: int, operation: str = "write"):
        self.subject = subject
        self.expected_version = expected_version
        self.operation = operation
        super().__init__(
            f"Concurrency conflict on session {subject} during {operation}: "
            f"expected version {expected_version}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            subject=self.subject,
            expected_version=self.expected_version,
            operation=self.operation,
        )
        return data


class ProcessingTimeout(FixbotError):
    """An operation exceeded its timeout or the remaining processing budget."""

    code = "ETIMEDOUT"
    retryable = True

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds:.2f}s")


def error_code(error: BaseException) -> str:
    """Return the error code for any exception (class name for foreign errors)."""
    if isinstance(error, FixbotError):
        return error.code
    if isinstance(error, TimeoutError):
        return ProcessingTimeout.code
    return type(error).__name__


__all__ = [
    "FixbotError",
    "ConfigurationError",
    "ValidationError",
    "TransientDependencyError",
    "CircuitOpenError",
    "ConcurrencyConflict",
    "ProcessingTimeout",
    "error_code",
]

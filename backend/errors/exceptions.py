"""
Custom exception hierarchy for Forkline.

All exceptions inherit from ForklineError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the caller can retry/fix the issue
- context: Additional key-value pairs for debugging
"""

from typing import Any, Optional
from .codes import ErrorCode


class ForklineError(Exception):
    """Base exception for all Forkline errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the caller
        recoverable: Whether the error can be resolved by caller action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class NotFoundError(ForklineError):
    """Error when a session, tree or message does not exist."""

    code = ErrorCode.NOT_FOUND_SESSION
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        **context: Any,
    ):
        # Set appropriate code based on resource type
        if resource_type == "tree":
            code = ErrorCode.NOT_FOUND_TREE
        elif resource_type == "message":
            code = ErrorCode.NOT_FOUND_MESSAGE
        else:
            code = ErrorCode.NOT_FOUND_SESSION

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id is not None:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class ValidationError(ForklineError):
    """Error during turn request or input validation."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class BackendError(ForklineError):
    """Error during a call to an AI backend."""

    code = ErrorCode.BACKEND_UNAVAILABLE
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        backend: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        if error_type == "timeout":
            code = ErrorCode.BACKEND_TIMEOUT
        elif error_type == "invalid":
            code = ErrorCode.BACKEND_RESPONSE_INVALID
        else:
            code = ErrorCode.BACKEND_UNAVAILABLE

        ctx = {**context}
        if backend:
            ctx["backend"] = backend
        if model:
            ctx["model"] = model
        super().__init__(message, details, code=code, **ctx)


class PersistenceError(ForklineError):
    """Error reading from or writing to the conversation store."""

    code = ErrorCode.PERSISTENCE_WRITE_FAILED
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        operation: Optional[str] = None,
        **context: Any,
    ):
        code = ErrorCode.PERSISTENCE_READ_FAILED if operation == "read" else ErrorCode.PERSISTENCE_WRITE_FAILED

        ctx = {**context}
        if operation:
            ctx["operation"] = operation
        super().__init__(message, details, code=code, **ctx)


class StreamProtocolError(ForklineError):
    """A backend produced a malformed incremental event."""

    code = ErrorCode.STREAM_PROTOCOL_INVALID
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        backend: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if backend:
            ctx["backend"] = backend
        super().__init__(message, details, **ctx)


class DependencyError(ForklineError):
    """Error with missing or failed dependencies."""

    code = ErrorCode.DEPENDENCY_MISSING
    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        package: Optional[str] = None,
        install_hint: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if package:
            ctx["package"] = package
        if install_hint:
            ctx["install_hint"] = install_hint
        super().__init__(message, details, **ctx)

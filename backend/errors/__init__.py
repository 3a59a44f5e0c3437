"""
Forkline Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        ForklineError,
        NotFoundError,
        ValidationError,
        BackendError,
        PersistenceError,
        StreamProtocolError,
        DependencyError,

        # Response builders
        error_response,
        success_response,
        format_error_for_stream,

        # Handlers
        register_exception_handlers,
        log_error,
    )

Example:
    from errors import NotFoundError

    def tree_of(self, session_id):
        row = ...
        if row is None:
            raise NotFoundError(
                "session not found",
                resource_type="session",
                resource_id=session_id,
            )
        return row["tree_id"]
"""

from .codes import ErrorCode
from .exceptions import (
    ForklineError,
    NotFoundError,
    ValidationError,
    BackendError,
    PersistenceError,
    StreamProtocolError,
    DependencyError,
)
from .response import (
    INVALID_SESSION_CODE,
    error_response,
    success_response,
    format_error_for_stream,
)
from .handlers import (
    register_exception_handlers,
    status_code_for,
    log_error,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ForklineError",
    "NotFoundError",
    "ValidationError",
    "BackendError",
    "PersistenceError",
    "StreamProtocolError",
    "DependencyError",
    # Response builders
    "INVALID_SESSION_CODE",
    "error_response",
    "success_response",
    "format_error_for_stream",
    # Handlers
    "register_exception_handlers",
    "status_code_for",
    "log_error",
]

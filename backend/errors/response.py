"""
Standard error response builders for Forkline.

Provides consistent response formats for the HTTP routes and the
streaming error event.
"""

from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import ForklineError, NotFoundError

# Machine-readable code the streaming error event carries for unknown sessions
INVALID_SESSION_CODE = "invalid_session"


def error_response(error: ForklineError | Exception, operation: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        operation: Optional operation name for context (e.g. "chat")
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import ValidationError, error_response
        >>> err = ValidationError("Missing parameter", parameter="content")
        >>> error_response(err, operation="chat")
        {
            "success": False,
            "error": {
                "code": "VALIDATION_MISSING_PARAM",
                "message": "Missing parameter",
                "details": None,
                "operation": "chat",
                "recoverable": True,
                "context": {"parameter": "content"}
            }
        }
    """
    if isinstance(error, ForklineError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "operation": operation,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Fallback for non-Forkline exceptions
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": str(error),
            "details": None,
            "operation": operation,
            "recoverable": False,
            "context": None,
        },
    }


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a standard success response dictionary.

    Args:
        data: Optional data dict to include in response
        **kwargs: Additional key-value pairs to include at top level

    Returns:
        Standard success response dict with success=True

    Example:
        >>> success_response(tree_id="tree_ab12")
        {"success": True, "tree_id": "tree_ab12"}
    """
    response = {"success": True}

    if data:
        response.update(data)
    if kwargs:
        response.update(kwargs)

    return response


def format_error_for_stream(error: ForklineError | Exception) -> dict:
    """Format an error as the payload of a streaming ``error`` event.

    Unknown sessions get the distinct ``invalid_session`` code so a client
    can drop its stale session binding; everything else carries the
    ErrorCode value and a human-readable message.
    """
    if isinstance(error, NotFoundError) and error.code == ErrorCode.NOT_FOUND_SESSION:
        return {"error": INVALID_SESSION_CODE, "message": "Session not found"}

    if isinstance(error, ForklineError):
        return {"error": error.code.value, "message": str(error)}

    return {"error": ErrorCode.INTERNAL_UNEXPECTED.value, "message": str(error)}

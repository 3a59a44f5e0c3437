"""
Error codes for Forkline.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for Forkline.

    Categories:
    - NOT_FOUND_*: Unknown session, tree or message
    - VALIDATION_*: Turn request / input validation errors
    - BACKEND_*: External model call failures
    - PERSISTENCE_*: Conversation store read/write failures
    - STREAM_*: Malformed incremental events
    - DEPENDENCY_*: Missing dependency errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Not found errors (missing resources)
    NOT_FOUND_SESSION = "NOT_FOUND_SESSION"
    NOT_FOUND_TREE = "NOT_FOUND_TREE"
    NOT_FOUND_MESSAGE = "NOT_FOUND_MESSAGE"

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"
    VALIDATION_UNKNOWN_BACKEND = "VALIDATION_UNKNOWN_BACKEND"

    # Backend errors (model interactions)
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    BACKEND_TIMEOUT = "BACKEND_TIMEOUT"
    BACKEND_RESPONSE_INVALID = "BACKEND_RESPONSE_INVALID"

    # Persistence errors (conversation store)
    PERSISTENCE_READ_FAILED = "PERSISTENCE_READ_FAILED"
    PERSISTENCE_WRITE_FAILED = "PERSISTENCE_WRITE_FAILED"

    # Stream protocol errors
    STREAM_PROTOCOL_INVALID = "STREAM_PROTOCOL_INVALID"

    # Dependency errors (missing packages/modules)
    DEPENDENCY_MISSING = "DEPENDENCY_MISSING"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"

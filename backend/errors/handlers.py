"""
Error handling utilities for Forkline.

Maps the exception hierarchy onto HTTP responses and provides a shared
logging helper.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .codes import ErrorCode
from .exceptions import (
    ForklineError,
    NotFoundError,
    ValidationError,
    BackendError,
    StreamProtocolError,
)
from .response import error_response

logger = logging.getLogger(__name__)


def status_code_for(error: ForklineError) -> int:
    """HTTP status code for a Forkline error."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, (BackendError, StreamProtocolError)):
        return 504 if error.code == ErrorCode.BACKEND_TIMEOUT else 502
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """Install a handler that renders ForklineError as the standard error body.

    Example:
        >>> app = FastAPI()
        >>> register_exception_handlers(app)
    """

    @app.exception_handler(ForklineError)
    async def _forkline_error_handler(request: Request, exc: ForklineError) -> JSONResponse:
        status = status_code_for(exc)
        # Caller mistakes are routine; only server-side failures get a traceback
        log_error(logger, exc, context=request.url.path, include_traceback=status >= 500)
        return JSONResponse(status_code=status, content=error_response(exc))


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Args:
        logger: Logger instance to use
        error: The exception to log
        context: Optional context string to prefix the message
        include_traceback: Whether to include the full stack trace

    Example:
        >>> log_error(logger, err, context="chat")
        # Logs: "[chat] NOT_FOUND_SESSION: session not found"
    """
    if isinstance(error, ForklineError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error)

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)

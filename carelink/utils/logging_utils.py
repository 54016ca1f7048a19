"""
Logging utilities for consistent logging with correlation IDs.

Messages are prefixed with the request's correlation ID and may carry extra
``key=value`` context. Callers must never pass tokens, codes, or secrets as
context values.
"""

import logging
from typing import Optional
from fastapi import Request


logger = logging.getLogger("carelink")


def get_correlation_id_from_request(request: Optional[Request]) -> str:
    """
    Extract correlation ID from request state or return empty string.

    Args:
        request: FastAPI request object (may be None)

    Returns:
        Correlation ID string or empty string if not available
    """
    if request is None:
        return ""
    return getattr(request.state, "correlation_id", "")


def _format(message: str, correlation_id: str, context: dict) -> str:
    formatted_message = f"[{correlation_id}] {message}" if correlation_id else message
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        if context_str:
            formatted_message = f"{formatted_message} ({context_str})"
    return formatted_message


def log_with_correlation(
    level: str,
    message: str,
    correlation_id: Optional[str] = None,
    request: Optional[Request] = None,
    exc_info: bool = False,
    **kwargs
) -> None:
    """
    Log a message with correlation ID.

    Args:
        level: Log level ('info', 'warning', 'error', 'debug')
        message: Log message
        correlation_id: Correlation ID (extracted from request if not provided)
        request: FastAPI request object (used to extract correlation ID)
        exc_info: Attach the active exception's traceback
        **kwargs: Additional context to include in log message
    """
    if correlation_id is None:
        correlation_id = get_correlation_id_from_request(request)

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(_format(message, correlation_id, kwargs), exc_info=exc_info)


def log_info(message: str, correlation_id: Optional[str] = None, request: Optional[Request] = None, **kwargs) -> None:
    """Log info message with correlation ID."""
    log_with_correlation("info", message, correlation_id, request, **kwargs)


def log_warning(message: str, correlation_id: Optional[str] = None, request: Optional[Request] = None, **kwargs) -> None:
    """Log warning message with correlation ID."""
    log_with_correlation("warning", message, correlation_id, request, **kwargs)


def log_error(message: str, correlation_id: Optional[str] = None, request: Optional[Request] = None, exc_info: bool = False, **kwargs) -> None:
    """Log error message with correlation ID."""
    log_with_correlation("error", message, correlation_id, request, exc_info=exc_info, **kwargs)

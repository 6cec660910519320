"""
Utility functions for exception logging and for rendering exceptions into
client-facing error payloads.
"""

import logging
import traceback

STACK_TRACE_LINES = 5


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.

    Args:
        obj: The object to convert to string

    Returns:
        A string representation of the object, falling back to safe alternatives
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            return f"<{type(obj).__name__} object (string conversion failed)>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: Exception,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback.
    Never raises, even for broken exception objects or logger failures.

    Args:
        logger: The logger instance to use
        prefix: Prefix for the log message (e.g., "[Proxy]", "[WebSocket]")
        exception: The exception to log
        level: The logging level to use (default: ERROR)
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        logger.log(
            level,
            f"{safe_prefix} Exception: {_safe_str(exception)}",
            exc_info=exception if exception is not None else False,
        )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            # nothing left to report through
            pass


def truncated_traceback(exception: Exception, limit: int = STACK_TRACE_LINES) -> list:
    """Return the last ``limit`` non-empty lines of the exception's traceback."""
    try:
        rendered = traceback.format_exception(
            type(exception), exception, exception.__traceback__
        )
    except Exception:
        return [_safe_str(exception)]
    lines = [line for chunk in rendered for line in chunk.splitlines() if line.strip()]
    return lines[-limit:] if limit > 0 else []

"""
Structured logging configuration for the LinkHub gateway.
"""

import asyncio
import functools
import logging
import sys
import time
from typing import Any, Callable, Optional, TextIO

import structlog
from structlog.contextvars import merge_contextvars
from structlog.processors import (
    CallsiteParameter,
    CallsiteParameterAdder,
    JSONRenderer,
    TimeStamper,
    add_log_level,
)
from structlog.stdlib import ProcessorFormatter, add_logger_name

from linkhub.core.config import settings


def setup_logging(
    level: Optional[str] = None,
    json_logs: Optional[bool] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structured logging for the application.

    structlog events and plain ``logging`` records (uvicorn, asyncpg) pass
    through the same processors and are rendered by one stdout handler.

    Args:
        level: Root log level, defaults to ``settings.log_level``
        json_logs: Render JSON lines instead of console output,
            defaults to on in production
        stream: Where the handler writes, defaults to stdout
    """
    level = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.is_production

    shared_processors = [
        merge_contextvars,
        add_log_level,
        add_logger_name,
        CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.FILENAME,
                CallsiteParameter.FUNC_NAME,
                CallsiteParameter.LINENO,
            ]
        ),
        TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                ProcessorFormatter.remove_processors_meta,
                JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level))

    # One line per HTTP request and per pool checkout is too chatty
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


class LogContext:
    """Context manager for adding contextual information to logs."""

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self.tokens: dict = {}

    def __enter__(self) -> "LogContext":
        self.tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self.tokens)


def log_performance(operation: str) -> Callable:
    """
    Decorator to log the duration of a coroutine.

    Args:
        operation: Name of the operation being performed
    """

    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"log_performance expects a coroutine function, got {func!r}")

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            logger = get_logger(func.__module__)
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.warning(
                    f"{operation} failed",
                    duration_ms=round(duration * 1000, 2),
                    error=str(e)
                )
                raise

            duration = time.perf_counter() - start_time
            logger.debug(
                f"{operation} completed",
                duration_ms=round(duration * 1000, 2)
            )
            return result

        return wrapper

    return decorator


setup_logging()

import functools
import logging
import os
import time
from datetime import datetime, timezone

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError


# Set up logging with environment variable
log_level_str = os.environ.get("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_str, logging.INFO)

# Errors the pool already retries; reporting every blip floods Sentry
TRANSIENT_ERROR_TYPES = (RedisConnectionError, RedisTimeoutError, ConnectionResetError)


def get_logger(name: str) -> logging.Logger:
    """Logger with a stream handler, for scripts that skip basicConfig."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(log_level)
    return logger


def time_execution(func):
    """
    Decorator to time an async function.

    Logs the elapsed time at DEBUG and returns the original result.
    """
    logger = get_logger(__name__)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(f"{func.__name__} completed in {elapsed_ms:.1f}ms")

    return wrapper


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def filter_transient_errors(event, hint):
    """
    Sentry ``before_send`` hook.

    Drops events caused by transient Redis connection/timeout errors;
    everything else is sent unchanged.
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info and isinstance(exc_info[1], TRANSIENT_ERROR_TYPES):
        return None
    return event

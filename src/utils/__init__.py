"""
Utils package for the engagement counter service

Redis access, rate limiting, metrics and small shared helpers.
"""

from .async_redis_utils import AsyncRedisService
from .common_utils import get_logger

__all__ = [
    "AsyncRedisService",
    "get_logger",
]

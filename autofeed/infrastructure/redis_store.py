"""
Shared fast key-value store (Redis) client.

One process-wide client built from REDIS_URL. Activity state and the scan
queue both live here.
"""

from __future__ import annotations

import os
from functools import lru_cache

import redis

from autofeed.infrastructure.settings import REDIS_URL
from autofeed.observability.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    Get or create the shared Redis client.

    Reads REDIS_URL fresh so a .env loaded after import still applies.
    """
    url = os.getenv("REDIS_URL") or REDIS_URL
    client = redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        health_check_interval=30,
    )
    logger.info("Configured Redis client for %s", url.split("@")[-1])
    return client


"""Redis connection management."""
import logging
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as redis

logger = logging.getLogger(__name__)


async def create_redis(redis_url: str) -> redis.Redis:
    """
    Create a Redis client and verify the connection.

    Args:
        redis_url: ``redis://[user:password@]host:port/db`` URL

    Raises:
        ValueError: If the URL is empty
        redis.ConnectionError: If the server cannot be reached
    """
    if not redis_url:
        raise ValueError("Redis URL not configured")

    parsed_url = urlparse(redis_url)

    client = redis.Redis(
        host=parsed_url.hostname or "localhost",
        port=parsed_url.port or 6379,
        db=int(parsed_url.path[1:]) if parsed_url.path and len(parsed_url.path) > 1 else 0,
        password=parsed_url.password,
        username=parsed_url.username,
        encoding="utf-8",
        decode_responses=True,
        health_check_interval=30,
        socket_keepalive=True,
        retry_on_timeout=True,
        max_connections=10,
    )

    try:
        await client.ping()
    except redis.RedisError as e:
        logger.error(f"❌ Redis connection failed: {e}")
        await client.aclose()
        raise

    logger.info(f"✅ Redis connected to {parsed_url.hostname}:{parsed_url.port or 6379}")
    return client


async def close_redis(client: Optional[redis.Redis]) -> None:
    """Close a Redis client created by ``create_redis``."""
    if client is not None:
        await client.aclose()
        logger.info("✅ Redis connection closed")


async def redis_health_check(client: Optional[redis.Redis]) -> bool:
    """Check Redis health status."""
    if client is None:
        return False
    try:
        await client.ping()
        return True
    except redis.RedisError:
        return False

"""Cache connection helpers."""
from .redis_client import close_redis, create_redis, redis_health_check

__all__ = ["close_redis", "create_redis", "redis_health_check"]

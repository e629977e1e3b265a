"""TTL caches for contract metadata, keyed by (network id, lowercase address)."""
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from .models import ContractMetadata

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def cache_key(network_id: str, address: str) -> CacheKey:
    return (str(network_id), address.lower())


class MetadataCache(ABC):
    """Abstract base class for contract metadata caches."""

    @abstractmethod
    async def get(self, network_id: str, address: str) -> Optional[ContractMetadata]:
        """Return the cached entry, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, network_id: str, address: str, metadata: ContractMetadata) -> None:
        """Store an entry with the cache TTL."""
        pass

    @abstractmethod
    async def clear(self, address: Optional[str] = None, network_id: Optional[str] = None) -> None:
        """Drop one entry, or everything when no key is given."""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        pass


class MemoryMetadataCache(MetadataCache):
    """
    In-process cache with TTL checked on read.

    Concurrent writers for the same key simply overwrite each other; every
    write carries a complete entry so the last one wins.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the memory cache.

        Args:
            ttl_seconds: How long an entry stays valid
            clock: Monotonic time source, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[ContractMetadata, float]] = {}
        self._hits = 0
        self._misses = 0

    async def get(self, network_id: str, address: str) -> Optional[ContractMetadata]:
        key = cache_key(network_id, address)
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        metadata, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            self._misses += 1
            return None

        self._hits += 1
        return metadata

    async def set(self, network_id: str, address: str, metadata: ContractMetadata) -> None:
        self._entries[cache_key(network_id, address)] = (metadata, self._clock())

    async def clear(self, address: Optional[str] = None, network_id: Optional[str] = None) -> None:
        if address and network_id:
            self._entries.pop(cache_key(network_id, address), None)
            logger.debug(f"Cleared metadata cache for {address} on network {network_id}")
        else:
            self._entries.clear()
            logger.debug("Cleared entire contract metadata cache")

    async def stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "size": len(self._entries),
            "entries": [f"{network}:{address}" for network, address in self._entries],
            "hits": self._hits,
            "misses": self._misses,
            "ttl_seconds": self.ttl_seconds,
        }


class RedisMetadataCache(MetadataCache):
    """Shared cache in Redis; expiry is delegated to ``SETEX``."""

    def __init__(
        self,
        redis_client,
        ttl_seconds: float = 3600.0,
        key_prefix: str = "contract_metadata"
    ):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, network_id: str, address: str) -> str:
        network, addr = cache_key(network_id, address)
        return f"{self.key_prefix}:{network}:{addr}"

    async def get(self, network_id: str, address: str) -> Optional[ContractMetadata]:
        cached_data = await self.redis_client.get(self._key(network_id, address))
        if not cached_data:
            return None

        try:
            return ContractMetadata.from_cache(json.loads(cached_data))
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to parse cached metadata for {address}: {e}")
            return None

    async def set(self, network_id: str, address: str, metadata: ContractMetadata) -> None:
        await self.redis_client.setex(
            self._key(network_id, address),
            max(1, int(self.ttl_seconds)),
            json.dumps(metadata.to_cache())
        )

    async def clear(self, address: Optional[str] = None, network_id: Optional[str] = None) -> None:
        if address and network_id:
            await self.redis_client.delete(self._key(network_id, address))
            return

        keys = [key async for key in self.redis_client.scan_iter(match=f"{self.key_prefix}:*")]
        if keys:
            await self.redis_client.delete(*keys)
        logger.debug(f"Cleared {len(keys)} cached metadata entries from Redis")

    async def stats(self) -> Dict[str, Any]:
        keys = [key async for key in self.redis_client.scan_iter(match=f"{self.key_prefix}:*")]
        return {
            "backend": "redis",
            "size": len(keys),
            "ttl_seconds": self.ttl_seconds,
        }

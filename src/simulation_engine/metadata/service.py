"""Contract metadata lookups against the Etherscan v2 API."""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from aiohttp import ClientTimeout
from redis.exceptions import RedisError

from .cache import MemoryMetadataCache, MetadataCache
from .models import ContractMetadata

logger = logging.getLogger(__name__)


class ContractMetadataService:
    """
    Fetches verified contract source and ABI, cached per network and address.

    Lookups never raise: any failure is logged and reported as ``None`` so a
    missing explorer entry cannot fail a simulation.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.etherscan.io/v2/api",
        cache: Optional[MetadataCache] = None,
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the metadata service.

        Args:
            api_key: Etherscan API key; lookups are skipped without one
            base_url: Etherscan v2 endpoint
            cache: Metadata cache, defaults to a one hour memory cache
            timeout_seconds: Per-request timeout
            session: Optional pre-built HTTP session
        """
        self.api_key = api_key
        self.base_url = base_url
        self.cache = cache or MemoryMetadataCache()
        self.timeout_seconds = timeout_seconds

        self.session = session
        self._owns_session = session is None

        self._stats = {
            "lookups": 0,
            "fetches": 0,
            "not_found": 0,
            "errors": 0,
        }

    async def initialize(self) -> None:
        """Initialize HTTP session."""
        if self.session:
            return
        self.session = aiohttp.ClientSession(timeout=ClientTimeout(total=self.timeout_seconds))
        self._owns_session = True

    async def close(self) -> None:
        """Close HTTP session."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def get_contract_metadata(self, address: str, network_id: str) -> Optional[ContractMetadata]:
        """
        Get metadata for a contract, from cache when fresh.

        Args:
            address: Contract address (any case)
            network_id: Chain id the contract lives on

        Returns:
            Contract metadata, or None if unavailable
        """
        self._stats["lookups"] += 1

        try:
            cached = await self.cache.get(network_id, address)
            if cached is not None:
                logger.debug(f"Contract metadata for {address} found in cache")
                return cached

            metadata = await self._fetch(address, network_id)
            if metadata is not None:
                await self.cache.set(network_id, address, metadata)
            return metadata

        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, RedisError) as e:
            self._stats["errors"] += 1
            logger.error(f"Failed to fetch contract metadata for {address} on {network_id}: {e}")
            return None

    async def _fetch(self, address: str, network_id: str) -> Optional[ContractMetadata]:
        if not self.api_key:
            logger.debug(f"No explorer API key configured, skipping metadata for {address}")
            return None

        if not self.session:
            await self.initialize()

        params = {
            "module": "contract",
            "action": "getsourcecode",
            "address": address,
            "chainid": str(network_id),
            "apikey": self.api_key,
        }

        logger.info(f"Fetching contract metadata for {address} on network {network_id}")
        self._stats["fetches"] += 1

        async with self.session.get(self.base_url, params=params) as response:
            if response.status != 200:
                error_text = await response.text()
                raise ValueError(f"Explorer returned HTTP {response.status}: {error_text[:200]}")
            data: Dict[str, Any] = await response.json(content_type=None)

        result = data.get("result")
        if data.get("status") != "1" or not isinstance(result, list) or not result:
            self._stats["not_found"] += 1
            logger.debug(f"No verified source for {address}: {data.get('message')}")
            return None

        return ContractMetadata.from_etherscan(address, result[0])

    async def get_many(
        self,
        addresses: Iterable[str],
        network_id: str
    ) -> Dict[str, ContractMetadata]:
        """Fetch several contracts concurrently, omitting the ones that fail."""
        unique = list(dict.fromkeys(a.lower() for a in addresses))
        results = await asyncio.gather(
            *(self.get_contract_metadata(address, network_id) for address in unique),
            return_exceptions=True
        )

        contracts: Dict[str, ContractMetadata] = {}
        for address, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.warning(f"Metadata lookup for {address} failed: {result}")
            elif result is not None:
                contracts[address] = result
        return contracts

    async def preload(self, addresses: List[str], network_id: str) -> int:
        """Warm the cache; returns how many contracts resolved."""
        logger.info(f"Preloading contract metadata for {len(addresses)} address(es) on {network_id}")
        contracts = await self.get_many(addresses, network_id)
        logger.info(f"Contract metadata preloading completed: {len(contracts)}/{len(addresses)}")
        return len(contracts)

    async def clear_cache(self, address: Optional[str] = None, network_id: Optional[str] = None) -> None:
        await self.cache.clear(address, network_id)

    async def get_stats(self) -> Dict[str, Any]:
        """Get service and cache statistics."""
        stats: Dict[str, Any] = self._stats.copy()
        stats["cache"] = await self.cache.stats()
        return stats

"""JSON-RPC gateway with ordered multi-endpoint failover."""
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import aiohttp
from eth_utils import is_0x_prefixed, is_hex
from eth_utils import to_hex as int_to_hex

from ..errors import AllEndpointsFailed, RPCError

logger = logging.getLogger(__name__)

BLOCK_TAGS = ("latest", "earliest", "pending")

BlockIdentifier = Union[int, str]


def to_hex(value: BlockIdentifier) -> str:
    """
    Normalize a numeric quantity or block identifier for transmission.

    Integers, decimal strings and ``0x`` strings become minimal lowercase
    ``0x`` hex (no leading zeros). The ``latest``/``earliest``/``pending``
    tags pass through.

    Raises:
        ValueError: If the value is neither a number nor a known tag
    """
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert boolean {value!r} to a hex quantity")

    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Negative quantity {value} cannot be hex encoded")
        return int_to_hex(value)

    if isinstance(value, str):
        text = value.strip()
        if text.lower() in BLOCK_TAGS:
            return text.lower()
        if is_0x_prefixed(text):
            if len(text) == 2 or not is_hex(text):
                raise ValueError(f"Invalid hex quantity: {value!r}")
            return int_to_hex(int(text, 16))
        if text.isdigit():
            return int_to_hex(int(text))

    raise ValueError(f"Cannot convert {value!r} to a hex quantity")


def call_tracer_config(state_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Tracer options for geth's callTracer with per-frame logs."""
    config: Dict[str, Any] = {
        "tracer": "callTracer",
        "tracerConfig": {
            "onlyTopCall": False,
            "withLog": True,
        },
    }
    if state_overrides:
        config["stateOverrides"] = state_overrides
    return config


def prestate_tracer_config(state_overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Tracer options for geth's prestateTracer in diff mode."""
    config: Dict[str, Any] = {
        "tracer": "prestateTracer",
        "tracerConfig": {
            "diffMode": True,
            "disableCode": True,
            "disableStorage": False,
        },
    }
    if state_overrides:
        config["stateOverrides"] = state_overrides
    return config


@dataclass
class GatewayConfig:
    """Configuration for an RPC gateway."""
    endpoints: List[str] = field(default_factory=list)
    timeout_seconds: float = 30.0
    name: str = "upstream"

    @classmethod
    def from_settings(cls, settings: Any) -> "GatewayConfig":
        return cls(
            endpoints=settings.rpc_url_list,
            timeout_seconds=settings.request_timeout_seconds,
        )


class RPCGateway:
    """
    Async JSON-RPC client over an ordered list of endpoints.

    Each call is tried against the endpoints in order; the first success
    wins. Transport errors, non-2xx responses and JSON-RPC error envelopes
    all move on to the next endpoint. No endpoint is retried, so the worst
    case latency is ``len(endpoints) * timeout_seconds``.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        timeout_seconds: float = 30.0,
        name: str = "upstream",
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the gateway.

        Args:
            endpoints: Endpoint URLs in failover order
            timeout_seconds: Per-request timeout
            name: Label used in log messages
            session: Optional pre-built HTTP session (not closed by the gateway)
        """
        if not endpoints:
            raise ValueError("RPCGateway requires at least one endpoint")

        self.endpoints: List[str] = list(endpoints)
        self.timeout_seconds = timeout_seconds
        self.name = name

        self.session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self._request_ids = itertools.count(1)

        self._stats = {
            "requests": 0,
            "endpoint_failures": 0,
            "failed_calls": 0,
        }

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        session: Optional[aiohttp.ClientSession] = None
    ) -> "RPCGateway":
        return cls(
            config.endpoints,
            timeout_seconds=config.timeout_seconds,
            name=config.name,
            session=session
        )

    async def initialize(self) -> None:
        """Create the HTTP session if none was injected."""
        if self.session:
            return

        self.session = aiohttp.ClientSession(
            headers={"Content-Type": "application/json"},
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
        )
        self._owns_session = True
        logger.debug(f"Initialized {self.name} RPC session for {len(self.endpoints)} endpoint(s)")

    async def close(self) -> None:
        """Close the HTTP session if the gateway created it."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> "RPCGateway":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_single_endpoint(self) -> bool:
        return len(self.endpoints) == 1

    def next_request_id(self) -> int:
        return next(self._request_ids)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Send a JSON-RPC request with ordered failover.

        Args:
            method: JSON-RPC method name
            params: Positional parameters

        Returns:
            The ``result`` member of the first successful response

        Raises:
            AllEndpointsFailed: If every endpoint failed
        """
        if not self.session:
            await self.initialize()

        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else [],
            "id": self.next_request_id(),
        }
        self._stats["requests"] += 1

        last_error: Optional[RPCError] = None
        attempts = 0

        for endpoint in self.endpoints:
            attempts += 1
            try:
                return await self._post(endpoint, payload)
            except RPCError as e:
                last_error = e
                self._stats["endpoint_failures"] += 1
                if attempts < len(self.endpoints):
                    logger.warning(
                        f"{self.name} RPC {method} failed on {endpoint}, trying next endpoint: {e}"
                    )
                else:
                    logger.warning(f"{self.name} RPC {method} failed on {endpoint}: {e}")

        self._stats["failed_calls"] += 1
        raise AllEndpointsFailed(
            f"All RPC endpoints failed for {method}. Last error: {last_error}",
            last_error=last_error,
            attempts=attempts
        )

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        """POST one payload to one endpoint, raising RPCError on any failure."""
        logger.debug(f"RPC request to {endpoint}: {payload}")

        try:
            async with self.session.post(
                endpoint,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            ) as response:
                if response.status < 200 or response.status >= 300:
                    error_text = await response.text()
                    raise RPCError(
                        f"HTTP {response.status} - {error_text[:200]}",
                        endpoint=endpoint
                    )
                data = await response.json(content_type=None)

        except aiohttp.ClientError as e:
            raise RPCError(f"Network error: {e}", endpoint=endpoint) from e
        except asyncio.TimeoutError as e:
            raise RPCError(
                f"Request timed out after {self.timeout_seconds}s",
                endpoint=endpoint
            ) from e
        except ValueError as e:
            raise RPCError(f"Invalid JSON response: {e}", endpoint=endpoint) from e

        if not isinstance(data, dict):
            raise RPCError(f"Malformed JSON-RPC response: {data!r}", endpoint=endpoint)

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raise RPCError(
                    f"RPC Error: {error.get('message') or 'Unknown error'}",
                    endpoint=endpoint,
                    code=error.get("code")
                )
            raise RPCError(f"RPC Error: {error}", endpoint=endpoint)

        logger.debug(f"RPC response from {endpoint}: {data}")
        return data.get("result")

    # Typed helpers

    async def get_block_by_number(
        self,
        block: BlockIdentifier = "latest",
        full_transactions: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Fetch a block header (or full block) by number or tag."""
        logger.info(f"Fetching block {block}")
        return await self.call("eth_getBlockByNumber", [to_hex(block), full_transactions])

    async def get_gas_price(self) -> str:
        return await self.call("eth_gasPrice", [])

    async def get_network_id(self) -> str:
        return await self.call("net_version", [])

    async def get_chain_id(self) -> str:
        return await self.call("eth_chainId", [])

    async def get_block_number(self) -> str:
        return await self.call("eth_blockNumber", [])

    async def get_transaction_by_hash(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        logger.info(f"Fetching transaction {tx_hash}")
        return await self.call("eth_getTransactionByHash", [tx_hash])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def create_access_list(
        self,
        call: Dict[str, Any],
        block: BlockIdentifier = "latest"
    ) -> Dict[str, Any]:
        """Generate an EIP-2930 access list for a call."""
        logger.info(f"Creating access list for {call.get('from')} -> {call.get('to')}")
        return await self.call("eth_createAccessList", [call, to_hex(block)])

    async def send_transaction(self, call: Dict[str, Any]) -> str:
        """Send an unsigned transaction (sandbox nodes only)."""
        return await self.call("eth_sendTransaction", [call])

    async def trace_call(
        self,
        call: Dict[str, Any],
        block: BlockIdentifier,
        tracer: Dict[str, Any]
    ) -> Any:
        """Run ``debug_traceCall`` with the given tracer options."""
        logger.info(
            f"Tracing call {call.get('from')} -> {call.get('to')} "
            f"at {block} with {tracer.get('tracer')}"
        )
        return await self.call("debug_traceCall", [call, to_hex(block), tracer])

    async def trace_transaction(self, tx_hash: str, tracer: Dict[str, Any]) -> Any:
        """Run ``debug_traceTransaction`` with the given tracer options."""
        logger.info(f"Tracing transaction {tx_hash} with {tracer.get('tracer')}")
        return await self.call("debug_traceTransaction", [tx_hash, tracer])

    async def parity_trace_call(
        self,
        call: Dict[str, Any],
        block: BlockIdentifier,
        trace_types: Sequence[str] = ("trace", "stateDiff")
    ) -> Dict[str, Any]:
        """Run the Parity/OpenEthereum style ``trace_call``."""
        logger.info(f"Parity trace_call {call.get('from')} -> {call.get('to')} at {block}")
        return await self.call("trace_call", [call, list(trace_types), to_hex(block)])

    # Sandbox cheat codes

    async def mine(self, blocks: int = 1) -> Any:
        return await self.call("evm_mine", [] if blocks == 1 else [to_hex(blocks)])

    async def set_balance(self, address: str, balance: BlockIdentifier) -> Any:
        return await self.call("anvil_setBalance", [address, to_hex(balance)])

    async def set_storage_at(self, address: str, slot: str, value: str) -> Any:
        return await self.call("anvil_setStorageAt", [address, slot, value])

    async def health_check(self) -> bool:
        """Return True if ``net_version`` succeeds on any endpoint."""
        try:
            await self.get_network_id()
            return True
        except RPCError as e:
            logger.error(f"{self.name} RPC health check failed: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        stats = self._stats.copy()
        stats["endpoints"] = len(self.endpoints)
        stats["session_active"] = self.session is not None
        return stats

"""Execution strategies: upstream node tracing and local sandbox execution."""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from ..rpc.gateway import RPCGateway, call_tracer_config, prestate_tracer_config
from ..sandbox.manager import InstancePoolManager, SandboxInstance
from .models import RawExecution, SimulationMode, SimulationRequest

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str], RPCGateway]


class ExecutionStrategy(ABC):
    """
    Runs the tracer calls for one request (or one bundle).

    Strategies are created per request. ``session()`` holds whatever
    resources the strategy needs and ``gateway`` is only valid inside it.
    """

    mode: SimulationMode

    @property
    @abstractmethod
    def gateway(self) -> RPCGateway:
        """Gateway the transaction is executed against."""
        pass

    @property
    def enrichment_gateway(self) -> RPCGateway:
        """Gateway for block header and access list lookups."""
        return self.gateway

    @abstractmethod
    async def run_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        """Call-level trace of the transaction."""
        pass

    @abstractmethod
    async def run_state_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        """Pre/post state of every touched account."""
        pass

    async def execute(self, request: SimulationRequest, call: Dict[str, Any]) -> RawExecution:
        call_trace = await self.run_tracer(request, call)
        prestate = await self.run_state_tracer(request, call)
        return RawExecution(call_trace=call_trace, prestate=prestate)

    @asynccontextmanager
    async def session(self) -> AsyncIterator["ExecutionStrategy"]:
        yield self


class UpstreamTraceStrategy(ExecutionStrategy):
    """Delegates tracing to the upstream nodes' debug (or Parity trace) API."""

    mode = SimulationMode.UPSTREAM

    def __init__(self, gateway: RPCGateway, trace_backend: str = "debug"):
        if trace_backend not in ("debug", "parity"):
            raise ValueError(f"Unknown trace backend: {trace_backend}")
        self._gateway = gateway
        self.trace_backend = trace_backend

    @property
    def gateway(self) -> RPCGateway:
        return self._gateway

    async def run_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        if self.trace_backend == "parity":
            return await self._gateway.parity_trace_call(call, request.block, ["trace"])
        return await self._gateway.trace_call(
            call,
            request.block,
            call_tracer_config(request.state_overrides())
        )

    async def run_state_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        if self.trace_backend == "parity":
            return await self._gateway.parity_trace_call(call, request.block, ["stateDiff"])
        return await self._gateway.trace_call(
            call,
            request.block,
            prestate_tracer_config(request.state_overrides())
        )

    async def execute(self, request: SimulationRequest, call: Dict[str, Any]) -> RawExecution:
        if self.trace_backend == "parity":
            # trace_call returns both trace kinds in one round trip
            result = await self._gateway.parity_trace_call(call, request.block, ["trace", "stateDiff"])
            result = result or {}
            return RawExecution(
                call_trace={"trace": result.get("trace") or [], "output": result.get("output")},
                prestate={"stateDiff": result.get("stateDiff") or {}},
            )
        return await super().execute(request, call)


class SandboxStrategy(ExecutionStrategy):
    """
    Executes against a fresh forked sandbox.

    The sandbox is acquired when the session opens and released when it
    closes, whatever happened inside.
    """

    mode = SimulationMode.SANDBOX

    def __init__(
        self,
        pool: InstancePoolManager,
        upstream: RPCGateway,
        gateway_factory: GatewayFactory,
        fork_block: Optional[int] = None
    ):
        """
        Initialize the sandbox strategy.

        Args:
            pool: Instance pool manager
            upstream: Upstream gateway; the sandbox forks from its first endpoint
            gateway_factory: Builds a single-endpoint gateway for a sandbox URL
            fork_block: Block number to fork at, latest when None
        """
        self.pool = pool
        self.upstream = upstream
        self.fork_url = upstream.endpoints[0]
        self.fork_block = fork_block
        self._gateway_factory = gateway_factory

        self.instance: Optional[SandboxInstance] = None
        self._gateway: Optional[RPCGateway] = None

    @property
    def gateway(self) -> RPCGateway:
        if self._gateway is None:
            raise RuntimeError("Sandbox strategy used outside of its session")
        return self._gateway

    @property
    def enrichment_gateway(self) -> RPCGateway:
        # The sandbox state moves on once the transaction is mined
        return self.upstream

    @asynccontextmanager
    async def session(self) -> AsyncIterator["SandboxStrategy"]:
        async with self.pool.instance(self.fork_url, self.fork_block) as instance:
            self.instance = instance
            self._gateway = self._gateway_factory(instance.rpc_url)
            try:
                async with self._gateway:
                    yield self
            finally:
                self._gateway = None
                self.instance = None

    async def run_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        return await self.gateway.trace_call(
            call,
            "latest",
            call_tracer_config(request.state_overrides())
        )

    async def run_state_tracer(self, request: SimulationRequest, call: Dict[str, Any]) -> Any:
        return await self.gateway.trace_call(
            call,
            "latest",
            prestate_tracer_config(request.state_overrides())
        )

    async def apply_state_objects(self, request: SimulationRequest) -> None:
        """Write balance and storage overrides into the sandbox."""
        for address, state in request.state_objects.items():
            if state.balance is not None:
                await self.gateway.set_balance(address, state.balance)
            for slot, value in state.storage.items():
                await self.gateway.set_storage_at(address, slot, value)

    async def execute(self, request: SimulationRequest, call: Dict[str, Any]) -> RawExecution:
        raw = await super().execute(request, call)

        await self.apply_state_objects(request)

        tx_hash = await self.gateway.send_transaction(call)
        # Mining is disabled, so the transaction only lands once a block is mined
        await self.gateway.mine()
        receipt = await self.gateway.get_transaction_receipt(tx_hash)

        if self.instance is not None:
            self.instance.touch()
        logger.info(f"Sandbox transaction {tx_hash} mined with status {(receipt or {}).get('status')}")

        raw.transaction_hash = tx_hash
        raw.receipt = receipt
        return raw

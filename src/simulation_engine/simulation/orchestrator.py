"""Simulation orchestrator: validate, execute, assemble, enrich."""
import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..errors import (
    RPCError,
    SimulationEngineError,
    SimulationFailed,
    TransactionNotFound,
    ValidationError,
)
from ..metadata.service import ContractMetadataService
from ..rpc.gateway import BLOCK_TAGS, RPCGateway, call_tracer_config, prestate_tracer_config
from ..sandbox.manager import InstancePoolManager
from ..tracing.assembler import (
    assemble_call_tree,
    collect_addresses,
    events_from_receipt,
    extract_events,
    normalize_trace,
)
from ..tracing.state_diff import split_prestate_result
from .models import (
    BundleMode,
    RawExecution,
    SimulationMode,
    SimulationRequest,
    SimulationResult,
    SimulationStage,
)
from .strategies import (
    ExecutionStrategy,
    GatewayFactory,
    SandboxStrategy,
    UpstreamTraceStrategy,
)

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")

RequestLike = Union[SimulationRequest, Dict[str, Any]]


@dataclass
class SimulationRun:
    """Tracks the stage of one simulation for logging and failure accounting."""
    mode: SimulationMode
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    stage: SimulationStage = SimulationStage.VALIDATING
    started_at: float = field(default_factory=time.time)

    def advance(self, stage: SimulationStage) -> None:
        logger.debug(f"Simulation {self.run_id}: {self.stage.value} -> {stage.value}")
        self.stage = stage

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.started_at) * 1000


class SimulationOrchestrator:
    """
    Facade over the gateway, the sandbox pool and the trace pipeline.

    One request flows VALIDATING -> EXECUTING -> ASSEMBLING -> ENRICHING ->
    DONE. Any failure moves it to FAILED; a sandbox held by the request is
    released on the way out in every case.
    """

    def __init__(
        self,
        upstream: RPCGateway,
        pool: InstancePoolManager,
        metadata: Optional[ContractMetadataService] = None,
        network_id: Union[int, str] = 999,
        trace_backend: str = "debug",
        gateway_factory: Optional[GatewayFactory] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            upstream: Gateway over the configured upstream nodes
            pool: Sandbox instance pool manager
            metadata: Contract metadata service, enrichment is skipped without one
            network_id: Chain id used for metadata lookups
            trace_backend: 'debug' for debug_traceCall, 'parity' for trace_call
            gateway_factory: Builds the gateway for a sandbox URL
        """
        self.upstream = upstream
        self.pool = pool
        self.metadata = metadata
        self.network_id = str(network_id)
        self.trace_backend = trace_backend
        self._gateway_factory = gateway_factory or self._default_gateway_factory

        self._stats = {
            "simulations": 0,
            "failures": 0,
            "upstream_simulations": 0,
            "sandbox_simulations": 0,
            "bundles": 0,
            "transaction_traces": 0,
            "total_time_ms": 0.0,
        }

    def _default_gateway_factory(self, url: str) -> RPCGateway:
        return RPCGateway([url], timeout_seconds=self.upstream.timeout_seconds, name=f"sandbox {url}")

    def create_strategy(
        self,
        mode: SimulationMode,
        request: Optional[SimulationRequest] = None
    ) -> ExecutionStrategy:
        """Build the execution strategy for one request."""
        if mode == SimulationMode.UPSTREAM:
            return UpstreamTraceStrategy(self.upstream, self.trace_backend)

        fork_block = None
        if request is not None and request.block not in BLOCK_TAGS:
            fork_block = int(request.block, 16)
        return SandboxStrategy(self.pool, self.upstream, self._gateway_factory, fork_block)

    @staticmethod
    def _coerce(request: RequestLike) -> SimulationRequest:
        if isinstance(request, SimulationRequest):
            return request
        if isinstance(request, dict):
            return SimulationRequest.from_payload(request)
        raise ValidationError(f"Unsupported request type: {type(request).__name__}")

    async def simulate(
        self,
        request: RequestLike,
        mode: SimulationMode = SimulationMode.UPSTREAM
    ) -> SimulationResult:
        """
        Simulate one transaction.

        Args:
            request: Simulation request or its JSON body
            mode: Upstream tracing or sandbox execution

        Returns:
            The normalized simulation result

        Raises:
            ValidationError: If the request is malformed, before any RPC or process activity
            SimulationFailed: For any failure after validation
        """
        mode = SimulationMode(mode)
        run = SimulationRun(mode=mode)

        request = self._coerce(request)
        request.validate_fields()

        self._stats["simulations"] += 1
        self._stats[f"{mode.value}_simulations"] += 1
        logger.info(
            f"Starting {mode.value} simulation {run.run_id}: "
            f"{request.from_address} -> {request.to_address} at {request.block}"
        )

        strategy = self.create_strategy(mode, request)
        try:
            async with strategy.session() as active:
                result = await self._run(active, request, run)
        except Exception as e:
            raise self._failure(run, e) from e

        result.simulation_time_ms = run.elapsed_ms
        self._stats["total_time_ms"] += result.simulation_time_ms
        logger.info(f"Simulation {run.run_id} completed in {result.simulation_time_ms:.1f}ms")
        return result

    async def _run(
        self,
        strategy: ExecutionStrategy,
        request: SimulationRequest,
        run: SimulationRun
    ) -> SimulationResult:
        call = request.to_call()

        run.advance(SimulationStage.EXECUTING)
        raw = await strategy.execute(request, call)

        run.advance(SimulationStage.ASSEMBLING)
        result = self._assemble(request, strategy.mode, raw)

        run.advance(SimulationStage.ENRICHING)
        await self._enrich(result, strategy.enrichment_gateway, call)

        run.advance(SimulationStage.DONE)
        return result

    def _failure(self, run: SimulationRun, error: Exception) -> SimulationFailed:
        failed_stage = run.stage
        run.advance(SimulationStage.FAILED)
        self._stats["failures"] += 1

        if isinstance(error, SimulationEngineError):
            logger.error(f"Simulation {run.run_id} failed while {failed_stage.value}: {error.message}")
            message = error.message
        else:
            logger.error(
                f"Simulation {run.run_id} failed while {failed_stage.value}: {error}",
                exc_info=True
            )
            message = str(error) or type(error).__name__

        return SimulationFailed(f"Simulation failed: {message}", cause=error)

    def _assemble(
        self,
        request: SimulationRequest,
        mode: SimulationMode,
        raw: RawExecution
    ) -> SimulationResult:
        """Run the raw tracer output through the assembler and the diff extractor."""
        forest = assemble_call_tree(normalize_trace(raw.call_trace))
        storage_diff, balance_diff = split_prestate_result(raw.prestate)

        result = SimulationResult(
            request=request,
            mode=mode,
            call_trace=forest,
            storage_diff=storage_diff,
            balance_diff=balance_diff,
            events=extract_events(forest),
            transaction_hash=raw.transaction_hash,
        )

        if forest:
            root = forest[0].frame
            result.output = root.output or "0x"
            result.gas_used = root.gas_used
            result.error = root.error
            result.status = root.error is None

        # Parity trace_call reports the return data at the top level
        if isinstance(raw.call_trace, dict) and raw.call_trace.get("output") and "trace" in raw.call_trace:
            result.output = raw.call_trace["output"]

        if raw.receipt:
            result.gas_used = raw.receipt.get("gasUsed") or result.gas_used
            result.status = raw.receipt.get("status") == "0x1"
            receipt_events = events_from_receipt(raw.receipt)
            if receipt_events is not None:
                result.events = receipt_events

        return result

    async def _enrich(
        self,
        result: SimulationResult,
        gateway: RPCGateway,
        call: Optional[Dict[str, Any]]
    ) -> None:
        """Attach contract metadata, block header and access list."""
        addresses = collect_addresses(result.call_trace, result.request.to_address)

        contracts, header, access_list = await asyncio.gather(
            self._fetch_contracts(addresses),
            self._fetch_block_header(gateway, result.request),
            self._resolve_access_list(gateway, result.request, call),
        )

        result.contracts = contracts
        result.block_header = header
        result.access_list = access_list

    async def _fetch_contracts(self, addresses: Sequence[str]) -> Dict[str, Any]:
        if self.metadata is None or not addresses:
            return {}
        return await self.metadata.get_many(addresses, self.network_id)

    async def _fetch_block_header(self, gateway: RPCGateway, request: SimulationRequest) -> Dict[str, Any]:
        if request.is_latest:
            return {}
        try:
            return await gateway.get_block_by_number(request.block, False) or {}
        except RPCError as e:
            logger.warning(f"Failed to fetch block header for {request.block}: {e}")
            return {}

    async def _resolve_access_list(
        self,
        gateway: RPCGateway,
        request: SimulationRequest,
        call: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        if not request.generate_access_list or call is None:
            return list(request.access_list)
        try:
            result = await gateway.create_access_list(call, request.block)
            return (result or {}).get("accessList") or []
        except RPCError as e:
            logger.warning(f"Failed to generate access list: {e}")
            return []

    async def trace_transaction(self, tx_hash: str) -> SimulationResult:
        """
        Trace an already mined transaction on the upstream nodes.

        Raises:
            ValidationError: If the hash is malformed
            TransactionNotFound: If no node knows the transaction
            SimulationFailed: For any other failure
        """
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError(f"Invalid 'txHash': {tx_hash}", field="txHash")

        run = SimulationRun(mode=SimulationMode.UPSTREAM)
        self._stats["transaction_traces"] += 1
        logger.info(f"Tracing transaction {tx_hash} ({run.run_id})")

        try:
            transaction = await self.upstream.get_transaction_by_hash(tx_hash)
            if not transaction:
                raise TransactionNotFound(f"Transaction not found: {tx_hash}")

            request = SimulationRequest(
                from_address=transaction.get("from"),
                to_address=transaction.get("to"),
                input=transaction.get("input") or "0x",
                value=transaction.get("value"),
                gas=transaction.get("gas"),
                gas_price=transaction.get("gasPrice"),
                block_number=transaction.get("blockNumber") or "latest",
                access_list=transaction.get("accessList") or [],
            )

            run.advance(SimulationStage.EXECUTING)
            raw = RawExecution(
                call_trace=await self.upstream.trace_transaction(tx_hash, call_tracer_config()),
                prestate=await self.upstream.trace_transaction(tx_hash, prestate_tracer_config()),
                transaction_hash=tx_hash,
            )

            run.advance(SimulationStage.ASSEMBLING)
            result = self._assemble(request, SimulationMode.UPSTREAM, raw)

            run.advance(SimulationStage.ENRICHING)
            await self._enrich(result, self.upstream, None)

            run.advance(SimulationStage.DONE)
        except TransactionNotFound:
            raise
        except Exception as e:
            raise self._failure(run, e) from e

        result.simulation_time_ms = run.elapsed_ms
        return result

    async def simulate_bundle(
        self,
        requests: Sequence[RequestLike],
        mode: SimulationMode = SimulationMode.SANDBOX,
        bundle_mode: BundleMode = BundleMode.PARALLEL
    ) -> List[SimulationResult]:
        """
        Simulate several transactions.

        ``parallel`` runs independent simulations concurrently. ``atomic``
        runs them in order inside a single sandbox so each transaction sees
        the state left by the previous one.

        Raises:
            ValidationError: If any request is malformed (nothing is executed)
            SimulationFailed: If any simulation fails
        """
        if not requests:
            raise ValidationError("Bundle must contain at least one transaction", field="transactions")

        parsed: List[SimulationRequest] = []
        for index, request in enumerate(requests):
            try:
                item = self._coerce(request)
                item.validate_fields()
            except ValidationError as e:
                raise ValidationError(
                    f"transactions[{index}]: {e.message}",
                    field=f"transactions[{index}].{e.field}" if e.field else f"transactions[{index}]"
                ) from e
            parsed.append(item)

        bundle_mode = BundleMode(bundle_mode)
        self._stats["bundles"] += 1
        logger.info(f"Simulating {bundle_mode.value} bundle of {len(parsed)} transaction(s)")

        if bundle_mode == BundleMode.PARALLEL:
            outcomes = await asyncio.gather(
                *(self.simulate(item, mode) for item in parsed),
                return_exceptions=True
            )
            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    raise outcome
            return list(outcomes)

        return await self._simulate_atomic(parsed)

    async def _simulate_atomic(self, requests: List[SimulationRequest]) -> List[SimulationResult]:
        run = SimulationRun(mode=SimulationMode.SANDBOX)
        self._stats["simulations"] += len(requests)
        self._stats["sandbox_simulations"] += len(requests)

        strategy = self.create_strategy(SimulationMode.SANDBOX, requests[0])
        results: List[SimulationResult] = []
        try:
            async with strategy.session() as active:
                for request in requests:
                    run.advance(SimulationStage.VALIDATING)
                    started = time.time()
                    result = await self._run(active, request, run)
                    result.simulation_time_ms = (time.time() - started) * 1000
                    self._stats["total_time_ms"] += result.simulation_time_ms
                    results.append(result)
        except Exception as e:
            raise self._failure(run, e) from e

        logger.info(f"Atomic bundle {run.run_id} completed in {run.elapsed_ms:.1f}ms")
        return results

    async def health_check(self) -> bool:
        """True if the upstream nodes answer."""
        return await self.upstream.health_check()

    def stats(self) -> Dict[str, Any]:
        """Counters plus a snapshot of the sandbox pool."""
        stats: Dict[str, Any] = self._stats.copy()
        completed = stats["simulations"] - stats["failures"]
        stats["average_time_ms"] = stats["total_time_ms"] / completed if completed > 0 else 0.0
        stats["pool"] = self.pool.stats()
        stats["upstream"] = self.upstream.get_stats()
        return stats

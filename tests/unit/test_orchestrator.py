"""Unit tests for the simulation orchestrator."""
from unittest.mock import AsyncMock, Mock

import pytest

from fakes import (
    BALANCE_SLOT,
    DEAD_UPSTREAM_URL,
    RECEIVER,
    SANDBOX_PORTS,
    SENDER,
    TOKEN,
    TRANSFER_VALUE,
    TX_HASH,
    UPSTREAM_URL,
    FakeLauncher,
    Harness,
    sandbox_node,
    token_transfer_prestate,
    trace_by_tracer,
    transfer_payload,
    upstream_node,
)
from simulation_engine.errors import (
    SimulationFailed,
    TransactionNotFound,
    ValidationError,
)
from simulation_engine.metadata import ContractMetadata
from simulation_engine.simulation import BundleMode, SimulationMode


class TestValidation:
    """Malformed requests are rejected before any RPC or process activity."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", [SimulationMode.UPSTREAM, SimulationMode.SANDBOX])
    @pytest.mark.parametrize("field", ["to", "from"])
    async def test_missing_required_field(self, field, mode):
        harness = Harness()
        payload = transfer_payload()
        del payload[field]

        with pytest.raises(ValidationError) as exc_info:
            await harness.orchestrator.simulate(payload, mode)

        assert exc_info.value.field == field
        assert exc_info.value.status_code == 400
        assert harness.network.attempts == []
        assert harness.launcher.commands == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("from", "0x1234"),
        ("value", "12abc"),
        ("gas", "-5"),
        ("blockNumber", "finalised"),
        ("input", "deadbeef"),
    ])
    async def test_invalid_fields(self, field, value):
        harness = Harness()

        with pytest.raises(ValidationError) as exc_info:
            await harness.orchestrator.simulate(transfer_payload(**{field: value}))

        assert exc_info.value.field == field
        assert harness.network.attempts == []

    @pytest.mark.asyncio
    async def test_invalid_state_object(self):
        harness = Harness()
        payload = transfer_payload(stateObjects={"0xnot-an-address": {"balance": "0x1"}})

        with pytest.raises(ValidationError, match="stateObjects"):
            await harness.orchestrator.simulate(payload)


class TestUpstreamSimulation:

    @pytest.mark.asyncio
    async def test_plain_transfer(self):
        harness = Harness()

        result = await harness.orchestrator.simulate(transfer_payload())

        assert len(result.call_trace) == 1
        assert result.call_trace[0].calls == []
        assert result.storage_diff == {}
        assert set(result.balance_diff) == {SENDER, RECEIVER}
        assert result.balance_diff[RECEIVER]["to"] == TRANSFER_VALUE
        assert result.gas_used == "0x5208"
        assert result.status is True
        assert result.events == []
        assert result.simulation_time_ms is not None

        # latest block: no header lookup, no access list
        assert harness.upstream.methods_called() == ["debug_traceCall", "debug_traceCall"]

        method, params = harness.upstream.calls[0]
        assert params[0]["gas"] == "0xf4240"
        assert params[1] == "latest"

    @pytest.mark.asyncio
    async def test_response_shape(self):
        harness = Harness()

        data = (await harness.orchestrator.simulate(transfer_payload())).to_dict()

        transaction = data["transaction"]
        assert transaction["from"] == SENDER
        assert transaction["gasUsed"] == "0x5208"
        assert transaction["callTrace"][0]["to"] == RECEIVER
        assert transaction["blockHeader"]["number"] == "0"
        assert "hash" not in transaction
        assert data["generated_access_list"] == []
        assert data["contracts"] == {}
        assert data["mode"] == "upstream"

    @pytest.mark.asyncio
    async def test_fails_over_to_second_endpoint(self):
        harness = Harness(upstream_urls=[DEAD_UPSTREAM_URL, UPSTREAM_URL])

        result = await harness.orchestrator.simulate(transfer_payload())

        assert result.status is True
        assert set(result.balance_diff) == {SENDER, RECEIVER}
        # two tracer calls, each tried on the dead node first
        assert harness.upstream.methods_called() == ["debug_traceCall", "debug_traceCall"]
        assert harness.network.attempts.count(DEAD_UPSTREAM_URL) == 2
        assert harness.network.attempts.count(UPSTREAM_URL) == 2
        assert len(harness.network.attempts) == 4

    @pytest.mark.asyncio
    async def test_storage_write_reports_no_contract_balance_change(self):
        def trace(params):
            if params[-1].get("tracer") == "prestateTracer":
                return token_transfer_prestate()
            return trace_by_tracer(params)

        harness = Harness(upstream=upstream_node(debug_traceCall=trace))

        result = await harness.orchestrator.simulate(transfer_payload(to=TOKEN, value="0x0"))

        assert set(result.balance_diff) == {SENDER}
        assert list(result.storage_diff) == [TOKEN]
        assert list(result.storage_diff[TOKEN]) == [BALANCE_SLOT]

    @pytest.mark.asyncio
    async def test_block_header_for_numbered_block(self):
        harness = Harness()

        result = await harness.orchestrator.simulate(transfer_payload(blockNumber=16))

        assert result.block_header["number"] == "0x10"
        assert result.to_dict()["transaction"]["timestamp"] == "0x6553f100"
        assert harness.upstream.calls[0][1][1] == "0x10"

    @pytest.mark.asyncio
    async def test_generated_access_list(self):
        harness = Harness()

        result = await harness.orchestrator.simulate(transfer_payload(generateAccessList=True))

        assert result.access_list == [{"address": RECEIVER, "storageKeys": []}]

    @pytest.mark.asyncio
    async def test_enrichment_failures_degrade(self):
        harness = Harness(upstream=upstream_node(
            eth_getBlockByNumber=RuntimeError("missing trie node"),
            eth_createAccessList=RuntimeError("method not supported"),
        ))

        result = await harness.orchestrator.simulate(
            transfer_payload(blockNumber="0x10", generateAccessList=True)
        )

        assert result.block_header == {}
        assert result.access_list == []
        assert result.to_dict()["transaction"]["blockHeader"]["hash"] == "0x0"
        assert set(result.balance_diff) == {SENDER, RECEIVER}

    @pytest.mark.asyncio
    async def test_trace_failure_is_wrapped(self):
        harness = Harness(upstream=upstream_node(debug_traceCall=RuntimeError("execution timeout")))

        with pytest.raises(SimulationFailed) as exc_info:
            await harness.orchestrator.simulate(transfer_payload())

        assert exc_info.value.status_code == 502
        assert "execution timeout" in exc_info.value.message
        assert harness.orchestrator.stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_contract_metadata(self):
        metadata = Mock()
        metadata.get_many = AsyncMock(return_value={RECEIVER: ContractMetadata(address=RECEIVER, contract_name="Vault")})
        harness = Harness(metadata=metadata)

        data = (await harness.orchestrator.simulate(transfer_payload())).to_dict()

        assert data["contracts"][RECEIVER]["ContractName"] == "Vault"
        metadata.get_many.assert_awaited_once_with([RECEIVER], "1")

    @pytest.mark.asyncio
    async def test_parity_backend(self):
        parity_result = {
            "output": "0x01",
            "trace": [{
                "type": "call",
                "action": {"callType": "call", "from": SENDER, "to": RECEIVER, "gas": "0xf4240", "input": "0x", "value": TRANSFER_VALUE},
                "result": {"gasUsed": "0x5208", "output": "0x01"},
                "traceAddress": [],
                "subtraces": 0,
            }],
            "stateDiff": {
                RECEIVER: {"balance": {"+": TRANSFER_VALUE}, "storage": {}},
            },
        }
        harness = Harness(upstream=upstream_node(trace_call=parity_result), trace_backend="parity")

        result = await harness.orchestrator.simulate(transfer_payload())

        assert harness.upstream.methods_called() == ["trace_call"]
        assert result.output == "0x01"
        assert result.balance_diff == {RECEIVER: {"from": "0x0", "to": TRANSFER_VALUE}}


class TestSandboxSimulation:
    """Sandbox mode acquires one instance per request and always releases it."""

    @pytest.mark.asyncio
    async def test_executes_in_sandbox(self):
        harness = Harness()
        payload = transfer_payload(
            blockNumber="0x10",
            stateObjects={SENDER: {"balance": "0x56bc75e2d63100000"}},
        )

        result = await harness.orchestrator.simulate(payload, SimulationMode.SANDBOX)

        assert result.transaction_hash == TX_HASH
        assert result.to_dict()["transaction"]["hash"] == TX_HASH
        assert result.to_dict()["mode"] == "sandbox"
        assert result.status is True
        assert set(result.balance_diff) == {SENDER, RECEIVER}

        command = harness.launcher.commands[0]
        assert command[command.index("--fork-url") + 1] == UPSTREAM_URL
        assert command[command.index("--fork-block-number") + 1] == "16"

        assert harness.sandbox.methods_called() == [
            "debug_traceCall",
            "debug_traceCall",
            "anvil_setBalance",
            "eth_sendTransaction",
            "evm_mine",
            "eth_getTransactionReceipt",
        ]
        assert harness.sandbox.calls[0][1][1] == "latest"
        # header comes from upstream, the sandbox has moved past the fork block
        assert "eth_getBlockByNumber" in harness.upstream.methods_called()

        assert harness.pool.live_count == 0
        assert harness.launcher.processes[0].terminate_calls == 1

    @pytest.mark.asyncio
    async def test_released_on_failure(self):
        harness = Harness(sandbox=sandbox_node(eth_sendTransaction=RuntimeError("insufficient funds")))

        with pytest.raises(SimulationFailed, match="insufficient funds"):
            await harness.orchestrator.simulate(transfer_payload(), SimulationMode.SANDBOX)

        assert harness.pool.live_count == 0
        assert harness.pool.ports.available_count == len(SANDBOX_PORTS)
        assert harness.launcher.processes[0].terminate_calls == 1

    @pytest.mark.asyncio
    async def test_startup_failure_keeps_status(self):
        harness = Harness(launcher=FakeLauncher("missing"))

        with pytest.raises(SimulationFailed) as exc_info:
            await harness.orchestrator.simulate(transfer_payload(), SimulationMode.SANDBOX)

        assert exc_info.value.status_code == 503
        assert harness.pool.ports.available_count == len(SANDBOX_PORTS)

    @pytest.mark.asyncio
    async def test_reverted_receipt(self):
        receipt = {"transactionHash": TX_HASH, "status": "0x0", "gasUsed": "0x6000"}
        harness = Harness(sandbox=sandbox_node(eth_getTransactionReceipt=receipt))

        result = await harness.orchestrator.simulate(transfer_payload(), SimulationMode.SANDBOX)

        assert result.status is False
        assert result.gas_used == "0x6000"

    @pytest.mark.asyncio
    async def test_events_come_from_receipt(self):
        logs = [
            {"address": RECEIVER, "topics": ["0xddf2"], "data": "0x1", "logIndex": "0x0"},
            {"address": RECEIVER, "topics": ["0x8c5b"], "data": "0x2", "logIndex": "0x1"},
        ]
        receipt = {"transactionHash": TX_HASH, "status": "0x1", "gasUsed": "0x5208", "logs": logs}
        harness = Harness(sandbox=sandbox_node(eth_getTransactionReceipt=receipt))

        result = await harness.orchestrator.simulate(transfer_payload(), SimulationMode.SANDBOX)

        assert [e["data"] for e in result.events] == ["0x1", "0x2"]
        assert [e["index"] for e in result.events] == [0, 1]


class TestTraceTransaction:

    MINED = {
        "hash": TX_HASH,
        "from": SENDER,
        "to": RECEIVER,
        "input": "0x",
        "value": TRANSFER_VALUE,
        "gas": "0x5208",
        "gasPrice": "0x3b9aca00",
        "blockNumber": "0x10",
    }

    @pytest.mark.asyncio
    async def test_invalid_hash(self):
        harness = Harness()

        with pytest.raises(ValidationError):
            await harness.orchestrator.trace_transaction("0x1234")
        assert harness.network.attempts == []

    @pytest.mark.asyncio
    async def test_not_found(self):
        harness = Harness(upstream=upstream_node(eth_getTransactionByHash=None))

        with pytest.raises(TransactionNotFound) as exc_info:
            await harness.orchestrator.trace_transaction(TX_HASH)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_traces_mined_transaction(self):
        harness = Harness(upstream=upstream_node(eth_getTransactionByHash=self.MINED))

        result = await harness.orchestrator.trace_transaction(TX_HASH)

        assert result.transaction_hash == TX_HASH
        assert result.block_header["number"] == "0x10"
        assert set(result.balance_diff) == {SENDER, RECEIVER}
        assert harness.upstream.methods_called().count("debug_traceTransaction") == 2

        data = result.to_dict()["transaction"]
        assert data["gasPrice"] == "0x3b9aca00"
        assert data["gas"] == "0x5208"


class TestBundles:

    @pytest.mark.asyncio
    async def test_empty_bundle(self):
        with pytest.raises(ValidationError):
            await Harness().orchestrator.simulate_bundle([])

    @pytest.mark.asyncio
    async def test_invalid_item_rejects_whole_bundle(self):
        harness = Harness()
        bad = transfer_payload()
        del bad["to"]

        with pytest.raises(ValidationError) as exc_info:
            await harness.orchestrator.simulate_bundle([transfer_payload(), bad])

        assert exc_info.value.field == "transactions[1].to"
        assert harness.network.attempts == []
        assert harness.launcher.commands == []

    @pytest.mark.asyncio
    async def test_parallel_bundle(self):
        harness = Harness()

        results = await harness.orchestrator.simulate_bundle(
            [transfer_payload(), transfer_payload(value="0x1")],
            mode=SimulationMode.SANDBOX,
            bundle_mode=BundleMode.PARALLEL,
        )

        assert len(results) == 2
        assert len(harness.launcher.commands) == 2
        assert harness.pool.live_count == 0

    @pytest.mark.asyncio
    async def test_parallel_bundle_failure(self):
        harness = Harness(upstream=upstream_node(debug_traceCall=RuntimeError("boom")))

        with pytest.raises(SimulationFailed):
            await harness.orchestrator.simulate_bundle(
                [transfer_payload(), transfer_payload()],
                mode=SimulationMode.UPSTREAM,
            )

    @pytest.mark.asyncio
    async def test_atomic_bundle_shares_one_sandbox(self):
        harness = Harness()

        results = await harness.orchestrator.simulate_bundle(
            [transfer_payload(), transfer_payload(value="0x1")],
            bundle_mode=BundleMode.ATOMIC,
        )

        assert len(results) == 2
        assert all(result.transaction_hash == TX_HASH for result in results)
        assert len(harness.launcher.commands) == 1
        assert harness.sandbox.methods_called().count("eth_sendTransaction") == 2
        assert harness.pool.live_count == 0


class TestHealthAndStats:

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await Harness().orchestrator.health_check() is True

    @pytest.mark.asyncio
    async def test_stats(self):
        harness = Harness()
        await harness.orchestrator.simulate(transfer_payload())

        stats = harness.orchestrator.stats()

        assert stats["simulations"] == 1
        assert stats["upstream_simulations"] == 1
        assert stats["failures"] == 0
        assert stats["pool"]["totalInstances"] == 0
        assert stats["upstream"]["requests"] == 2

"""Test doubles for the HTTP session, JSON-RPC nodes and sandbox processes."""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp

from simulation_engine.errors import InstanceStartupError
from simulation_engine.rpc import RPCGateway
from simulation_engine.sandbox import InstancePoolManager, PoolConfig
from simulation_engine.simulation import SimulationOrchestrator


class FakeResponse:
    """Minimal stand-in for ``aiohttp.ClientResponse``."""

    def __init__(self, status: int = 200, body: Any = None, text: Optional[str] = None):
        self.status = status
        self._body = body
        self._text = text

    async def json(self, content_type: Optional[str] = None) -> Any:
        if self._text is not None and self._body is None:
            return json.loads(self._text)
        return self._body

    async def text(self) -> str:
        if self._text is not None:
            return self._text
        return json.dumps(self._body)


class _RequestContext:
    def __init__(self, outcome: Union[FakeResponse, BaseException]):
        self._outcome = outcome

    async def __aenter__(self) -> FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


Handler = Callable[[str, Dict[str, Any]], Union[FakeResponse, BaseException]]


class FakeSession:
    """Records every POST/GET and answers through a handler."""

    def __init__(self, handler: Handler):
        self.handler = handler
        self.requests: List[Tuple[str, Any]] = []
        self.closed = False

    def post(self, url: str, json: Any = None, **kwargs) -> _RequestContext:
        self.requests.append((url, json))
        return _RequestContext(self.handler(url, json))

    def get(self, url: str, params: Any = None, **kwargs) -> _RequestContext:
        self.requests.append((url, params))
        return _RequestContext(self.handler(url, params))

    async def close(self) -> None:
        self.closed = True

    def urls(self) -> List[str]:
        return [url for url, _ in self.requests]


def rpc_result(payload: Dict[str, Any], result: Any) -> FakeResponse:
    return FakeResponse(200, {"jsonrpc": "2.0", "id": payload["id"], "result": result})


def rpc_error(payload: Dict[str, Any], code: int = -32000, message: str = "execution reverted") -> FakeResponse:
    return FakeResponse(200, {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": code, "message": message}})


class FakeNode:
    """
    JSON-RPC node answering from a method table.

    Values may be plain results, exceptions (returned as error envelopes)
    or callables taking the params list.
    """

    def __init__(self, methods: Optional[Dict[str, Any]] = None):
        self.methods: Dict[str, Any] = dict(methods or {})
        self.calls: List[Tuple[str, List[Any]]] = []

    def respond(self, payload: Dict[str, Any]) -> FakeResponse:
        method = payload["method"]
        params = payload.get("params") or []
        self.calls.append((method, params))

        if method not in self.methods:
            return rpc_error(payload, -32601, f"the method {method} does not exist")

        value = self.methods[method]
        if callable(value):
            value = value(params)
        if isinstance(value, Exception):
            return rpc_error(payload, message=str(value))
        return rpc_result(payload, value)

    def methods_called(self) -> List[str]:
        return [method for method, _ in self.calls]


class FakeNetwork:
    """Routes requests by URL to a node, an exception, or a raw response."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.attempts: List[str] = []

    def handle(self, url: str, payload: Dict[str, Any]) -> Union[FakeResponse, BaseException]:
        self.attempts.append(url)
        target = self.routes.get(url)
        if target is None:
            return aiohttp.ClientConnectionError(f"Cannot connect to host {url}")
        if isinstance(target, BaseException):
            return target
        if isinstance(target, FakeResponse):
            return target
        return target.respond(payload)

    def session(self) -> FakeSession:
        return FakeSession(self.handle)


class FakeProcess:
    """Quacks like ``SupervisedProcess`` without spawning anything."""

    def __init__(self, behavior: str = "ready", pid: int = 4242):
        loop = asyncio.get_running_loop()
        self.ready: asyncio.Future = loop.create_future()
        self.done: asyncio.Future = loop.create_future()
        self.pid = pid
        self.returncode: Optional[int] = None
        self.terminate_calls = 0

        if behavior == "ready":
            self.ready.set_result(None)
        elif behavior == "exit":
            self.returncode = 1
            self._reject("process exited with code 1")
            self.done.set_result("process exited with code 1")

    def _reject(self, reason: str) -> None:
        if not self.ready.done():
            self.ready.set_exception(InstanceStartupError(reason))
            self.ready.exception()

    def crash(self, reason: str = "process exited with code 1") -> None:
        self.returncode = 1
        if not self.done.done():
            self.done.set_result(reason)

    async def terminate(self, grace_seconds: float = 5.0) -> Optional[int]:
        self.terminate_calls += 1
        self._reject("terminated before becoming ready")
        if self.returncode is None:
            self.returncode = -15
        if not self.done.done():
            self.done.set_result("terminated")
        return self.returncode


class FakeLauncher:
    """Process launcher returning ``FakeProcess`` objects."""

    def __init__(self, behavior: str = "ready", delay: float = 0.0):
        self.behavior = behavior
        self.delay = delay
        self.commands: List[List[str]] = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, args, name: str = "sandbox") -> FakeProcess:
        self.commands.append(list(args))
        if self.behavior == "missing":
            raise FileNotFoundError(2, "No such file or directory", args[0])
        if self.delay:
            await asyncio.sleep(self.delay)
        process = FakeProcess(self.behavior, pid=4000 + len(self.processes))
        self.processes.append(process)
        return process


# Canned chain data for a plain ETH transfer

SENDER = "0x" + "a1" * 20
RECEIVER = "0x" + "b2" * 20
TX_HASH = "0x" + "ab" * 32
TRANSFER_VALUE = "0xde0b6b3a7640000"


def transfer_call_trace() -> Dict[str, Any]:
    return {
        "type": "CALL",
        "from": SENDER,
        "to": RECEIVER,
        "gas": "0xf4240",
        "gasUsed": "0x5208",
        "input": "0x",
        "output": "0x",
        "value": TRANSFER_VALUE,
    }


def transfer_prestate() -> Dict[str, Any]:
    return {
        "pre": {
            SENDER: {"balance": "0x1bc16d674ec80000", "nonce": 3},
            RECEIVER: {"balance": "0x0"},
        },
        "post": {
            SENDER: {"balance": "0xde0b6b3a7640000", "nonce": 4},
            RECEIVER: {"balance": TRANSFER_VALUE},
        },
    }


TOKEN = "0x" + "c3" * 20
BALANCE_SLOT = "0x" + "00" * 31 + "05"


def token_transfer_prestate() -> Dict[str, Any]:
    """diffMode output for an ERC-20 transfer: the token only changes storage."""
    return {
        "pre": {
            SENDER: {"balance": "0x1bc16d674ec80000", "nonce": 3},
            TOKEN: {
                "balance": "0x2386f26fc10000",
                "nonce": 1,
                "code": "0x6080604052",
                "storage": {BALANCE_SLOT: "0x" + format(100, "064x")},
            },
        },
        "post": {
            SENDER: {"balance": "0x1bc0f3f0a5a48000", "nonce": 4},
            TOKEN: {"storage": {BALANCE_SLOT: "0x" + format(40, "064x")}},
        },
    }


def trace_by_tracer(params: List[Any]) -> Dict[str, Any]:
    """Answer debug_traceCall/debug_traceTransaction according to the tracer option."""
    tracer = params[-1].get("tracer") if params and isinstance(params[-1], dict) else None
    if tracer == "prestateTracer":
        return transfer_prestate()
    return transfer_call_trace()


def transfer_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "from": SENDER,
        "to": RECEIVER,
        "input": "0x",
        "value": TRANSFER_VALUE,
        "blockNumber": "latest",
    }
    payload.update(overrides)
    return payload


def upstream_node(**extra: Any) -> FakeNode:
    methods: Dict[str, Any] = {
        "net_version": "999",
        "debug_traceCall": trace_by_tracer,
        "debug_traceTransaction": trace_by_tracer,
        "eth_getBlockByNumber": {"number": "0x10", "hash": "0x" + "11" * 32, "timestamp": "0x6553f100"},
        "eth_createAccessList": {"accessList": [{"address": RECEIVER, "storageKeys": []}], "gasUsed": "0x5208"},
    }
    methods.update(extra)
    return FakeNode(methods)


def sandbox_node(**extra: Any) -> FakeNode:
    methods: Dict[str, Any] = {
        "debug_traceCall": trace_by_tracer,
        "anvil_setBalance": None,
        "anvil_setStorageAt": True,
        "eth_sendTransaction": TX_HASH,
        "evm_mine": "0x0",
        "eth_getTransactionReceipt": {"transactionHash": TX_HASH, "status": "0x1", "gasUsed": "0x5208"},
    }
    methods.update(extra)
    return FakeNode(methods)


UPSTREAM_URL = "http://upstream:8545"
# Not routed by FakeNetwork, so every request to it fails to connect
DEAD_UPSTREAM_URL = "http://dead-upstream:8545"
SANDBOX_PORTS = range(8600, 8604)


class Harness:
    """Orchestrator wired to fake nodes and a fake process launcher."""

    def __init__(
        self,
        upstream: Optional[FakeNode] = None,
        sandbox: Optional[FakeNode] = None,
        launcher: Optional[FakeLauncher] = None,
        metadata: Any = None,
        trace_backend: str = "debug",
        upstream_urls: Optional[List[str]] = None,
    ):
        self.upstream = upstream or upstream_node()
        self.sandbox = sandbox or sandbox_node()
        self.launcher = launcher or FakeLauncher()

        routes: Dict[str, Any] = {UPSTREAM_URL: self.upstream}
        routes.update({f"http://127.0.0.1:{port}": self.sandbox for port in SANDBOX_PORTS})
        self.network = FakeNetwork(routes)

        self.pool = InstancePoolManager(
            PoolConfig(
                port_start=SANDBOX_PORTS[0],
                port_end=SANDBOX_PORTS[-1],
                max_instances=len(SANDBOX_PORTS),
                startup_timeout_seconds=1.0,
                termination_grace_seconds=0.1,
            ),
            launcher=self.launcher,
            port_probe=lambda port: True,
        )
        self.orchestrator = SimulationOrchestrator(
            upstream=RPCGateway(upstream_urls or [UPSTREAM_URL], session=self.network.session()),
            pool=self.pool,
            metadata=metadata,
            network_id=1,
            trace_backend=trace_backend,
            gateway_factory=lambda url: RPCGateway([url], session=self.network.session(), name="sandbox"),
        )

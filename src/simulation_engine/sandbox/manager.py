"""Instance pool manager for disposable forked-chain sandboxes."""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from ..errors import (
    InstanceStartupError,
    InstanceStartupTimeout,
    PoolExhausted,
    PortUnavailable,
)
from .port_pool import PortPool, is_port_free
from .process import SupervisedProcess, launch_process

logger = logging.getLogger(__name__)

ProcessLauncher = Callable[[Sequence[str], str], Awaitable[SupervisedProcess]]
PortProbe = Callable[[int], bool]


class InstanceState(str, Enum):
    """Lifecycle of a sandbox instance."""
    PENDING = "pending"
    READY = "ready"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


@dataclass
class PoolConfig:
    """Configuration for the sandbox instance pool."""
    binary: str = "anvil"
    host: str = "127.0.0.1"
    port_start: int = 8600
    port_end: int = 8619
    max_instances: int = 10

    # Passed to every sandbox process
    chain_id: int = 999
    gas_limit: int = 30_000_000
    extra_args: List[str] = field(default_factory=lambda: [
        "--no-cors",
        "--auto-impersonate",
        "--steps-tracing",
    ])

    startup_timeout_seconds: float = 30.0
    termination_grace_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Any) -> "PoolConfig":
        return cls(
            binary=settings.anvil_binary,
            port_start=settings.anvil_port_start,
            port_end=settings.anvil_port_end,
            max_instances=settings.anvil_max_instances,
            chain_id=settings.chain_id,
            gas_limit=settings.anvil_gas_limit,
            startup_timeout_seconds=settings.anvil_startup_timeout_seconds,
            termination_grace_seconds=settings.anvil_termination_grace_seconds,
        )


@dataclass
class SandboxInstance:
    """One live forked-chain process bound to one allocated port."""
    instance_id: str
    port: int
    fork_url: str
    rpc_url: str
    process: Optional[SupervisedProcess] = None
    state: InstanceState = InstanceState.PENDING
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)

    supervisor: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_ready(self) -> bool:
        return self.state == InstanceState.READY

    def touch(self) -> None:
        self.last_used = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Summary used by pool stats."""
        return {
            "id": self.instance_id,
            "port": self.port,
            "isReady": self.is_ready,
            "state": self.state.value,
            "pid": self.process.pid if self.process else None,
            "createdAt": datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat(),
            "lastUsed": datetime.fromtimestamp(self.last_used, tz=timezone.utc).isoformat(),
            "forkUrl": self.fork_url,
        }


class InstancePoolManager:
    """
    Owns the sandbox port range and the registry of live instances.

    Every change to the port pool or the registry happens under one
    ``asyncio.Lock``; process spawning, the readiness wait and termination
    run outside it so one slow sandbox never blocks other requests.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        launcher: ProcessLauncher = launch_process,
        port_probe: PortProbe = is_port_free
    ):
        """
        Initialize the pool manager.

        Args:
            config: Pool configuration
            launcher: Coroutine that starts a process and returns it supervised
            port_probe: Returns True when a port is free to bind
        """
        self.config = config or PoolConfig()
        self.ports = PortPool(self.config.port_start, self.config.port_end)

        self._launcher = launcher
        self._port_probe = port_probe
        self._instances: Dict[str, SandboxInstance] = {}
        self._lock = asyncio.Lock()

        self._stats = {
            "instances_started": 0,
            "instances_released": 0,
            "startup_failures": 0,
            "unexpected_exits": 0,
        }

        logger.info(
            f"Sandbox pool ready: ports {self.config.port_start}-{self.config.port_end}, "
            f"max {self.config.max_instances} instances"
        )

    @property
    def live_count(self) -> int:
        return len(self._instances)

    def get(self, instance_id: str) -> Optional[SandboxInstance]:
        return self._instances.get(instance_id)

    def build_command(self, port: int, fork_url: str, fork_block: Optional[int] = None) -> List[str]:
        """Command line for one sandbox process."""
        command = [
            self.config.binary,
            "--port", str(port),
            "--host", self.config.host,
            "--fork-url", fork_url,
            "--chain-id", str(self.config.chain_id),
            "--gas-limit", str(self.config.gas_limit),
            "--no-mining",
            *self.config.extra_args,
        ]
        if fork_block is not None:
            command.extend(["--fork-block-number", str(fork_block)])
        return command

    async def acquire(self, fork_url: str, fork_block: Optional[int] = None) -> SandboxInstance:
        """
        Spawn a fresh sandbox forked from ``fork_url`` and wait until it is ready.

        Args:
            fork_url: Upstream endpoint the sandbox forks chain state from
            fork_block: Block number to fork at, latest when None

        Returns:
            A ready sandbox instance

        Raises:
            PoolExhausted: If the instance limit is reached or no port is free
            PortUnavailable: If the allocated port is bound by another process
            InstanceStartupError: If the binary cannot run or the process dies early
            InstanceStartupTimeout: If no ready marker appears in time
        """
        async with self._lock:
            if len(self._instances) >= self.config.max_instances:
                raise PoolExhausted(
                    f"Sandbox pool at capacity: {len(self._instances)}/"
                    f"{self.config.max_instances} instances live"
                )

            port = self.ports.allocate()
            if port is None:
                raise PoolExhausted(
                    f"Sandbox pool at capacity: no free port in "
                    f"{self.config.port_start}-{self.config.port_end}"
                )

            instance = SandboxInstance(
                instance_id=uuid.uuid4().hex,
                port=port,
                fork_url=fork_url,
                rpc_url=f"http://{self.config.host}:{port}",
            )
            self._instances[instance.instance_id] = instance

        if not self._port_probe(port):
            await self._discard(instance)
            raise PortUnavailable(f"Port {port} is already in use by another process", port=port)

        logger.info(f"Starting sandbox {instance.instance_id} on port {port} forking {fork_url}")

        try:
            instance.process = await self._launcher(
                self.build_command(port, fork_url, fork_block),
                f"anvil:{port}"
            )
        except OSError as e:
            self._stats["startup_failures"] += 1
            await self._discard(instance)
            raise InstanceStartupError(
                f"Sandbox failed to start: cannot execute {self.config.binary}: {e}"
            ) from e

        try:
            await asyncio.wait_for(
                asyncio.shield(instance.process.ready),
                timeout=self.config.startup_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self._stats["startup_failures"] += 1
            await self.release(instance.instance_id)
            raise InstanceStartupTimeout(
                f"Sandbox failed to start: no ready marker on port {port} within "
                f"{self.config.startup_timeout_seconds}s"
            ) from e
        except InstanceStartupError:
            self._stats["startup_failures"] += 1
            await self.release(instance.instance_id)
            raise
        except asyncio.CancelledError:
            await self.release(instance.instance_id)
            raise

        async with self._lock:
            if instance.state != InstanceState.PENDING:
                raise InstanceStartupError(
                    f"Sandbox {instance.instance_id} was released during startup"
                )
            instance.state = InstanceState.READY
            instance.touch()

        instance.supervisor = asyncio.create_task(self._supervise(instance))
        self._stats["instances_started"] += 1

        logger.info(f"Sandbox {instance.instance_id} ready at {instance.rpc_url}")
        return instance

    async def release(self, instance_id: str) -> bool:
        """
        Terminate an instance and return its port.

        Idempotent: a second call, or a call racing with the process exit
        handler, finds nothing to do.

        Returns:
            True if this call released the instance, False otherwise
        """
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.state in (InstanceState.TERMINATING, InstanceState.TERMINATED):
                logger.debug(f"Sandbox {instance_id} already released")
                return False
            instance.state = InstanceState.TERMINATING

        try:
            if instance.process is not None:
                returncode = await instance.process.terminate(self.config.termination_grace_seconds)
                logger.debug(f"Sandbox {instance_id} exited with code {returncode}")
        finally:
            async with self._lock:
                self._instances.pop(instance_id, None)
                self.ports.release(instance.port)
                instance.state = InstanceState.TERMINATED
            self._stats["instances_released"] += 1

        logger.info(f"Released sandbox {instance_id} (port {instance.port})")
        return True

    async def release_all(self) -> int:
        """Release every live instance. Used at shutdown."""
        async with self._lock:
            instance_ids = list(self._instances)

        if not instance_ids:
            return 0

        logger.info(f"Releasing {len(instance_ids)} sandbox instance(s)")
        results = await asyncio.gather(*(self.release(i) for i in instance_ids))
        return sum(1 for released in results if released)

    @asynccontextmanager
    async def instance(
        self,
        fork_url: str,
        fork_block: Optional[int] = None
    ) -> AsyncIterator[SandboxInstance]:
        """Acquire a sandbox for the duration of a block."""
        sandbox = await self.acquire(fork_url, fork_block)
        try:
            yield sandbox
        finally:
            await self.release(sandbox.instance_id)

    def stats(self) -> Dict[str, Any]:
        """Read-only snapshot of the pool."""
        return {
            "totalInstances": len(self._instances),
            "maxInstances": self.config.max_instances,
            "availablePorts": self.ports.available_count,
            "totalPorts": self.ports.total,
            "instances": [instance.to_dict() for instance in self._instances.values()],
            **self._stats,
        }

    async def _discard(self, instance: SandboxInstance) -> None:
        """Deregister an instance that never got a process."""
        async with self._lock:
            self._instances.pop(instance.instance_id, None)
            self.ports.release(instance.port)
            instance.state = InstanceState.TERMINATED

    async def _supervise(self, instance: SandboxInstance) -> None:
        reason = await instance.process.done
        if instance.state == InstanceState.READY:
            self._stats["unexpected_exits"] += 1
            logger.warning(
                f"Sandbox {instance.instance_id} on port {instance.port} stopped unexpectedly: {reason}"
            )
            await self.release(instance.instance_id)

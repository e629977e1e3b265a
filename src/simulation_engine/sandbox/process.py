"""Supervised sandbox process with readiness and termination futures."""
import asyncio
import logging
import re
from typing import Iterable, List, Optional, Sequence

from ..errors import InstanceStartupError

logger = logging.getLogger(__name__)

# anvil prints one of these once its JSON-RPC server accepts connections
READY_MARKERS = ("Listening on", "RPC Server started")

STDERR_ERROR_PATTERN = re.compile(r"\berror\b", re.IGNORECASE)


class SupervisedProcess:
    """
    Wraps an ``asyncio.subprocess.Process`` and watches its output.

    ``ready`` resolves when a ready marker is seen on stdout and fails with
    ``InstanceStartupError`` if the process exits or writes an error line to
    stderr first. ``done`` resolves with a reason string once the process
    has exited or reported an error, at any point in its life.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        name: str = "sandbox",
        ready_markers: Iterable[str] = READY_MARKERS
    ):
        self.process = process
        self.name = name
        self.ready_markers = tuple(ready_markers)

        loop = asyncio.get_running_loop()
        self.ready: asyncio.Future = loop.create_future()
        self.done: asyncio.Future = loop.create_future()

        self._watchers: List[asyncio.Task] = [
            asyncio.create_task(self._watch_stdout()),
            asyncio.create_task(self._watch_stderr()),
            asyncio.create_task(self._watch_exit()),
        ]

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def _reject_ready(self, error: Exception) -> None:
        if self.ready.done():
            return
        self.ready.set_exception(error)
        # Nobody awaits readiness once startup is abandoned
        self.ready.exception()

    def _fail(self, reason: str) -> None:
        self._reject_ready(InstanceStartupError(f"{self.name} failed to start: {reason}"))
        if not self.done.done():
            self.done.set_result(reason)

    async def _watch_stdout(self) -> None:
        if self.process.stdout is None:
            return
        # Keep draining after readiness so the pipe never fills up
        async for raw_line in self.process.stdout:
            line = raw_line.decode(errors="replace").rstrip()
            logger.debug(f"[{self.name}] {line}")
            if not self.ready.done() and any(marker in line for marker in self.ready_markers):
                logger.info(f"[{self.name}] ready (pid {self.pid})")
                self.ready.set_result(None)

    async def _watch_stderr(self) -> None:
        if self.process.stderr is None:
            return
        async for raw_line in self.process.stderr:
            line = raw_line.decode(errors="replace").rstrip()
            if not line:
                continue
            logger.warning(f"[{self.name}] stderr: {line}")
            if STDERR_ERROR_PATTERN.search(line):
                self._fail(f"error output: {line}")

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        logger.info(f"[{self.name}] exited with code {returncode}")
        self._fail(f"process exited with code {returncode}")

    async def terminate(self, grace_seconds: float = 5.0) -> Optional[int]:
        """
        Stop the process: SIGTERM, wait ``grace_seconds``, then SIGKILL.

        Safe to call on a process that has already exited.

        Returns:
            The process exit code
        """
        self._reject_ready(InstanceStartupError(f"{self.name} terminated before becoming ready"))

        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] did not exit within {grace_seconds}s, killing")
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
                await self.process.wait()

        for task in self._watchers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._watchers, return_exceptions=True)

        if not self.done.done():
            self.done.set_result("terminated")

        return self.process.returncode


async def launch_process(args: Sequence[str], name: str = "sandbox") -> SupervisedProcess:
    """
    Start ``args`` as a child process with piped output.

    Raises:
        FileNotFoundError: If the binary does not exist
        PermissionError: If the binary is not executable
    """
    logger.debug(f"Starting process: {' '.join(args)}")
    process = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True
    )
    return SupervisedProcess(process, name=name)

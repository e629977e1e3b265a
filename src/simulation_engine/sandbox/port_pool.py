"""Fixed range of local ports handed out to sandbox instances."""
import logging
import socket
from typing import List, Optional, Set

logger = logging.getLogger(__name__)


class PortPool:
    """
    Inclusive port range partitioned into available and allocated ports.

    The pool itself is not locked; the owning pool manager serialises every
    allocate/release inside its own critical section.
    """

    def __init__(self, start: int, end: int):
        """
        Initialize the port pool.

        Args:
            start: First port of the range (inclusive)
            end: Last port of the range (inclusive)
        """
        if start <= 0 or end > 65535 or start > end:
            raise ValueError(f"Invalid port range {start}-{end}")

        self.start = start
        self.end = end

        self._available: Set[int] = set(range(start, end + 1))
        self._allocated: Set[int] = set()

    @property
    def total(self) -> int:
        return self.end - self.start + 1

    @property
    def available_count(self) -> int:
        return len(self._available)

    @property
    def allocated_count(self) -> int:
        return len(self._allocated)

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end

    def is_allocated(self, port: int) -> bool:
        return port in self._allocated

    def allocate(self) -> Optional[int]:
        """Take the lowest free port, or None if the pool is empty."""
        if not self._available:
            return None

        port = min(self._available)
        self._available.discard(port)
        self._allocated.add(port)
        return port

    def release(self, port: int) -> bool:
        """
        Return a port to the pool.

        Returns:
            True if the port was allocated and is now available again,
            False if it was already available
        """
        if port not in self:
            raise ValueError(f"Port {port} is outside the pool range {self.start}-{self.end}")

        if port not in self._allocated:
            logger.warning(f"Port {port} released while not allocated")
            return False

        self._allocated.discard(port)
        self._available.add(port)
        return True

    def available_ports(self) -> List[int]:
        return sorted(self._available)

    def allocated_ports(self) -> List[int]:
        return sorted(self._allocated)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check that nothing is bound to ``host:port`` by binding it briefly."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()

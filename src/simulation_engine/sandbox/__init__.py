"""Sandbox lifecycle: port pool, supervised processes and the instance pool manager."""
from .manager import InstancePoolManager, InstanceState, PoolConfig, SandboxInstance
from .port_pool import PortPool, is_port_free
from .process import READY_MARKERS, SupervisedProcess, launch_process

__all__ = [
    "InstancePoolManager",
    "InstanceState",
    "PoolConfig",
    "SandboxInstance",
    "PortPool",
    "is_port_free",
    "READY_MARKERS",
    "SupervisedProcess",
    "launch_process",
]

"""Transaction simulation: request/result models, execution strategies and the orchestrator."""
from .models import (
    BundleMode,
    RawExecution,
    SimulationMode,
    SimulationRequest,
    SimulationResult,
    SimulationStage,
    StateObject,
)
from .orchestrator import SimulationOrchestrator, SimulationRun
from .strategies import ExecutionStrategy, SandboxStrategy, UpstreamTraceStrategy

__all__ = [
    "BundleMode",
    "RawExecution",
    "SimulationMode",
    "SimulationRequest",
    "SimulationResult",
    "SimulationStage",
    "StateObject",
    "SimulationOrchestrator",
    "SimulationRun",
    "ExecutionStrategy",
    "SandboxStrategy",
    "UpstreamTraceStrategy",
]

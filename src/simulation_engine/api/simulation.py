"""Simulation, trace and stats endpoints."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..simulation.models import BundleMode, SimulationMode
from ..simulation.orchestrator import SimulationOrchestrator
from .dependencies import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


class BundleRequest(BaseModel):
    """Several transactions simulated together."""
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    mode: BundleMode = Field(default=BundleMode.PARALLEL, description="'parallel' or 'atomic'")
    execution: SimulationMode = Field(
        default=SimulationMode.SANDBOX,
        description="Where parallel bundles run; atomic bundles always use one sandbox"
    )


@router.post("/api/simulate")
async def simulate_upstream(
    payload: Dict[str, Any] = Body(...),
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Simulate by tracing on the upstream nodes."""
    result = await orchestrator.simulate(payload, SimulationMode.UPSTREAM)
    return result.to_dict()


@router.post("/api/v2/simulate")
async def simulate_sandbox(
    payload: Dict[str, Any] = Body(...),
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Simulate by executing in a fresh forked sandbox."""
    result = await orchestrator.simulate(payload, SimulationMode.SANDBOX)
    return result.to_dict()


@router.post("/api/bundle/simulate")
async def simulate_bundle(
    bundle: BundleRequest,
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    results = await orchestrator.simulate_bundle(bundle.transactions, bundle.execution, bundle.mode)
    return {
        "mode": bundle.mode.value,
        "results": [result.to_dict() for result in results],
    }


@router.get("/api/trace/tx")
async def trace_transaction(
    tx_hash: Optional[str] = Query(default=None, alias="txHash"),
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Trace a mined transaction by hash."""
    if not tx_hash:
        raise ValidationError("txHash query parameter is required", field="txHash")
    result = await orchestrator.trace_transaction(tx_hash)
    return result.to_dict()


@router.get("/api/v2/stats")
async def get_stats(
    orchestrator: SimulationOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    stats = orchestrator.stats()
    if orchestrator.metadata is not None:
        stats["metadata"] = await orchestrator.metadata.get_stats()
    return stats

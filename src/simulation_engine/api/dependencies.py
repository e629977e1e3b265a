"""Request-scoped access to the services built in the application lifespan."""
from fastapi import Request

from ..simulation.orchestrator import SimulationOrchestrator


def get_orchestrator(request: Request) -> SimulationOrchestrator:
    return request.app.state.orchestrator

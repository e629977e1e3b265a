"""HTTP API routers."""
from .errors import register_exception_handlers
from .health import router as health_router
from .simulation import router as simulation_router

__all__ = ["health_router", "register_exception_handlers", "simulation_router"]

"""Run the API server with uvicorn."""
import uvicorn

from simulation_engine.config import settings


def main() -> None:
    uvicorn.run(
        "simulation_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
    )


if __name__ == "__main__":
    main()

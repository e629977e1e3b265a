"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from simulation_engine.api import health_router, register_exception_handlers, simulation_router
from simulation_engine.cache import close_redis, create_redis
from simulation_engine.config import Settings, settings, setup_logging
from simulation_engine.metadata import (
    ContractMetadataService,
    MemoryMetadataCache,
    MetadataCache,
    RedisMetadataCache,
)
from simulation_engine.rpc import GatewayConfig, RPCGateway
from simulation_engine.sandbox import InstancePoolManager, PoolConfig
from simulation_engine.simulation import SimulationOrchestrator

logger = logging.getLogger(__name__)


def build_lifespan(config: Settings):
    """Lifespan that constructs every service once and stores it on ``app.state``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("🚀 Starting simulation engine...")

        if not config.rpc_url_list:
            raise RuntimeError("RPC_URLS must list at least one upstream endpoint")

        upstream = RPCGateway.from_config(GatewayConfig.from_settings(config))
        await upstream.initialize()
        logger.info(f"✅ Upstream gateway over {len(upstream.endpoints)} endpoint(s)")

        pool = InstancePoolManager(PoolConfig.from_settings(config))

        redis_client = None
        cache: Optional[MetadataCache] = None
        if config.redis_url:
            redis_client = await create_redis(config.redis_url)
            cache = RedisMetadataCache(redis_client, ttl_seconds=config.metadata_cache_ttl_seconds)
        else:
            cache = MemoryMetadataCache(ttl_seconds=config.metadata_cache_ttl_seconds)

        metadata = ContractMetadataService(
            api_key=config.etherscan_api_key,
            base_url=config.etherscan_api_url,
            cache=cache,
        )
        await metadata.initialize()

        app.state.redis_client = redis_client
        app.state.orchestrator = SimulationOrchestrator(
            upstream=upstream,
            pool=pool,
            metadata=metadata,
            network_id=config.chain_id,
            trace_backend=config.trace_backend,
        )
        logger.info("✅ Simulation engine startup complete!")

        try:
            yield
        finally:
            logger.info("🛑 Shutting down simulation engine...")
            released = await pool.release_all()
            if released:
                logger.info(f"Released {released} sandbox instance(s)")
            await metadata.close()
            await upstream.close()
            await close_redis(redis_client)
            logger.info("✅ Simulation engine shutdown complete!")

    return lifespan


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or settings
    setup_logging(config.log_level)

    app = FastAPI(
        title="Simulation Engine API",
        description="Transaction simulation through upstream tracing or forked sandboxes",
        version="0.1.0",
        lifespan=build_lifespan(config),
    )

    register_exception_handlers(app)
    app.include_router(health_router, tags=["health"])
    app.include_router(simulation_router, tags=["simulation"])

    return app


# Create the app instance
app = create_app()

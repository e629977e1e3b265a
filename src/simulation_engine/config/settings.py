"""Application settings and configuration."""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind the server")
    port: int = Field(default=4000, description="Port to bind the server")
    debug: bool = Field(default=False, description="Enable debug mode")
    
    log_level: str = Field(
        default="INFO",
        description="Root log level",
        alias="LOG_LEVEL"
    )
    
    # Upstream node settings
    rpc_urls: str = Field(
        default="",
        description="Comma-separated, ordered list of upstream JSON-RPC URLs",
        alias="RPC_URLS"
    )
    
    chain_id: int = Field(
        default=999,
        description="Chain ID of the upstream network",
        alias="CHAIN_ID"
    )
    
    request_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single outbound JSON-RPC request",
        alias="REQUEST_TIMEOUT_SECONDS"
    )
    
    trace_backend: str = Field(
        default="debug",
        description="Tracer API used upstream: 'debug' (debug_traceCall) or 'parity' (trace_call)",
        alias="TRACE_BACKEND"
    )
    
    # Sandbox (anvil) settings
    anvil_binary: str = Field(
        default="anvil",
        description="Path to the anvil binary",
        alias="ANVIL_BINARY"
    )
    
    anvil_port_start: int = Field(
        default=8600,
        description="First port of the sandbox port range (inclusive)",
        alias="ANVIL_PORT_START"
    )
    
    anvil_port_end: int = Field(
        default=8619,
        description="Last port of the sandbox port range (inclusive)",
        alias="ANVIL_PORT_END"
    )
    
    anvil_max_instances: int = Field(
        default=10,
        description="Maximum number of concurrently live sandbox instances",
        alias="ANVIL_MAX_INSTANCES"
    )
    
    anvil_startup_timeout_seconds: float = Field(
        default=30.0,
        description="How long to wait for a sandbox to print its listening marker",
        alias="ANVIL_STARTUP_TIMEOUT_SECONDS"
    )
    
    anvil_termination_grace_seconds: float = Field(
        default=5.0,
        description="Grace period between SIGTERM and SIGKILL",
        alias="ANVIL_TERMINATION_GRACE_SECONDS"
    )
    
    anvil_gas_limit: int = Field(
        default=30_000_000,
        description="Block gas limit passed to the sandbox",
        alias="ANVIL_GAS_LIMIT"
    )
    
    # Contract metadata settings
    etherscan_api_key: Optional[str] = Field(
        default=None,
        description="Etherscan API key for contract source lookups",
        alias="ETHERSCAN_API_KEY"
    )
    
    etherscan_api_url: str = Field(
        default="https://api.etherscan.io/v2/api",
        description="Etherscan v2 API endpoint",
        alias="ETHERSCAN_API_URL"
    )
    
    metadata_cache_ttl_seconds: float = Field(
        default=3600.0,
        description="Contract metadata cache TTL",
        alias="METADATA_CACHE_TTL_SECONDS"
    )
    
    # Redis settings
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL; enables the shared metadata cache when set",
        alias="REDIS_URL"
    )
    
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",  # Ignore extra fields from .env
        "populate_by_name": True,
    }
    
    @property
    def rpc_url_list(self) -> List[str]:
        """Upstream RPC URLs in failover order."""
        return [url.strip() for url in self.rpc_urls.split(",") if url.strip()]
    
    @property
    def fork_url(self) -> Optional[str]:
        """The upstream URL sandboxes fork from (first configured endpoint)."""
        urls = self.rpc_url_list
        return urls[0] if urls else None


# Global settings instance
settings = Settings()

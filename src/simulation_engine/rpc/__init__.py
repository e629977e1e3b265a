"""JSON-RPC access to upstream nodes and sandbox instances."""
from .gateway import (
    BLOCK_TAGS,
    GatewayConfig,
    RPCGateway,
    call_tracer_config,
    prestate_tracer_config,
    to_hex,
)

__all__ = [
    "BLOCK_TAGS",
    "GatewayConfig",
    "RPCGateway",
    "call_tracer_config",
    "prestate_tracer_config",
    "to_hex",
]

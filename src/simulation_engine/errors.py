"""Error taxonomy for the simulation engine.

Every error carries an HTTP-style ``status_code`` so the API layer can map
it to a response without knowing the concrete class.
"""
from typing import Optional


class SimulationEngineError(Exception):
    """Base exception for all simulation engine errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        """
        Initialize the error.

        Args:
            message: Human-readable error message
            status_code: Optional override of the class status code
        """
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(SimulationEngineError):
    """Malformed or missing request fields. Never retried."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


# Sandbox lifecycle errors

class SandboxError(SimulationEngineError):
    """Base exception for sandbox lifecycle failures."""

    status_code = 503


class PoolExhausted(SandboxError):
    """No port left or the live-instance limit was reached."""
    pass


class PortUnavailable(SandboxError):
    """The allocated port is already bound by an unrelated process."""

    def __init__(self, message: str, port: Optional[int] = None):
        self.port = port
        super().__init__(message)


class InstanceStartupError(SandboxError):
    """The sandbox process could not be started or died before becoming ready."""
    pass


class InstanceStartupTimeout(InstanceStartupError):
    """The sandbox did not print its listening marker within the startup timeout."""
    pass


# RPC errors

class RPCError(SimulationEngineError):
    """A single JSON-RPC request failed (transport, HTTP status or error envelope)."""

    status_code = 502

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        code: Optional[int] = None
    ):
        """
        Initialize RPC error.

        Args:
            message: Error message
            endpoint: Endpoint URL the request was sent to
            code: JSON-RPC error code, when the node returned an error envelope
        """
        self.endpoint = endpoint
        self.code = code
        super().__init__(message)


class AllEndpointsFailed(RPCError):
    """Every configured endpoint failed for one RPC call."""

    def __init__(
        self,
        message: str,
        last_error: Optional[Exception] = None,
        attempts: int = 0
    ):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message)


class TransactionNotFound(SimulationEngineError):
    """A transaction hash lookup returned nothing."""

    status_code = 404


class SimulationFailed(SimulationEngineError):
    """Catch-all for failures raised mid-pipeline.

    The status code follows the wrapped cause when it is a classified error,
    so capacity problems and broken sandboxes stay distinguishable.
    """

    status_code = 422

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        status_code = cause.status_code if isinstance(cause, SimulationEngineError) else None
        super().__init__(message, status_code=status_code)

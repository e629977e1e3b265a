"""Transaction simulation engine over upstream tracing and forked anvil sandboxes."""

__version__ = "0.1.0"

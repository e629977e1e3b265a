"""Pure trace processing: call tree assembly, event extraction and state diffs."""
from .assembler import (
    CallFrame,
    CallNode,
    TracePath,
    assemble_call_tree,
    collect_addresses,
    extract_events,
    events_from_receipt,
    flatten_call_tree,
    frames_from_call_tracer,
    frames_from_parity_trace,
    normalize_trace,
)
from .state_diff import (
    ZERO_WORD,
    split_parity_state_diff,
    split_prestate_result,
    split_state_diff,
)

__all__ = [
    "CallFrame",
    "CallNode",
    "TracePath",
    "assemble_call_tree",
    "collect_addresses",
    "extract_events",
    "events_from_receipt",
    "flatten_call_tree",
    "frames_from_call_tracer",
    "frames_from_parity_trace",
    "normalize_trace",
    "ZERO_WORD",
    "split_parity_state_diff",
    "split_prestate_result",
    "split_state_diff",
]

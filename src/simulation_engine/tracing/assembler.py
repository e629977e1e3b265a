"""
Call tree assembly from flat tracer output.

Tracers report calls either as a nested tree (geth ``callTracer``) or as a
flat list where each record carries its position as a path of child
indices (Parity ``trace_call``). Both are normalized to a flat list of
``CallFrame`` records and rebuilt into a forest of ``CallNode`` trees.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class TracePath:
    """Position of a call in the tree as a sequence of child indices."""
    indices: Tuple[int, ...] = ()

    @classmethod
    def of(cls, value: Union["TracePath", Iterable[int], None]) -> "TracePath":
        if isinstance(value, TracePath):
            return value
        if value is None:
            return cls()
        return cls(tuple(int(i) for i in value))

    @property
    def is_root(self) -> bool:
        return not self.indices

    @property
    def depth(self) -> int:
        return len(self.indices)

    @property
    def parent(self) -> Optional["TracePath"]:
        """Path of the enclosing call, or None for a root."""
        if self.is_root:
            return None
        return TracePath(self.indices[:-1])

    def child(self, index: int) -> "TracePath":
        return TracePath(self.indices + (index,))

    def to_list(self) -> List[int]:
        return list(self.indices)

    def __str__(self) -> str:
        return "[" + ",".join(str(i) for i in self.indices) + "]"


@dataclass(frozen=True)
class CallFrame:
    """One call as reported by a tracer, without its children."""
    from_address: Optional[str]
    to_address: Optional[str]
    trace_address: TracePath = field(default_factory=TracePath)
    call_type: str = "CALL"
    gas: str = "0x0"
    gas_used: str = "0x0"
    input: str = "0x"
    output: Optional[str] = None
    value: Optional[str] = None
    error: Optional[str] = None
    subtraces: int = 0
    logs: Tuple[Dict[str, Any], ...] = ()


@dataclass
class CallNode:
    """A call frame together with its ordered child calls."""
    frame: CallFrame
    calls: List["CallNode"] = field(default_factory=list)

    @property
    def trace_address(self) -> TracePath:
        return self.frame.trace_address

    @property
    def to_address(self) -> Optional[str]:
        return self.frame.to_address

    def walk(self) -> Iterable["CallNode"]:
        """Depth-first, pre-order traversal."""
        # EVM call depth can exceed the interpreter's recursion limit
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.calls))

    def to_dict(self) -> Dict[str, Any]:
        frame = self.frame
        node: Dict[str, Any] = {
            "type": frame.call_type,
            "from": frame.from_address,
            "to": frame.to_address,
            "gas": frame.gas,
            "gas_used": frame.gas_used,
            "input": frame.input,
            "output": frame.output,
            "value": frame.value,
            "subtraces": frame.subtraces,
            "traceAddress": frame.trace_address.to_list(),
            "calls": [child.to_dict() for child in self.calls],
        }
        if frame.error:
            node["error"] = frame.error
        if frame.logs:
            node["logs"] = [dict(log) for log in frame.logs]
        return node


def assemble_call_tree(frames: Iterable[CallFrame]) -> List[CallNode]:
    """
    Rebuild the call forest from flat frames.

    Pass 1 indexes every frame by its trace path (a repeated path replaces
    the earlier frame but keeps its position). Pass 2 attaches each node to
    its parent in index order. Frames whose parent is missing become extra
    roots instead of being dropped.

    Args:
        frames: Flat frames in tracer emission order

    Returns:
        Root nodes in emission order
    """
    nodes: Dict[TracePath, CallNode] = {}
    for frame in frames:
        if frame.trace_address in nodes:
            logger.debug(f"Duplicate trace path {frame.trace_address}, keeping the later frame")
        nodes[frame.trace_address] = CallNode(frame)

    roots: List[CallNode] = []
    orphans = 0

    for path, node in nodes.items():
        if path.is_root:
            roots.append(node)
            continue

        parent = nodes.get(path.parent)
        if parent is None:
            orphans += 1
            roots.append(node)
        else:
            parent.calls.append(node)

    if orphans:
        logger.warning(f"Trace contained {orphans} frame(s) with no parent, attached as roots")

    return roots


def flatten_call_tree(forest: Sequence[CallNode]) -> List[CallFrame]:
    """Depth-first flattening of a forest back to frames."""
    return [node.frame for root in forest for node in root.walk()]


def _logs_from(raw_logs: Optional[Sequence[Dict[str, Any]]]) -> Tuple[Dict[str, Any], ...]:
    return tuple(dict(log) for log in raw_logs or ())


def frames_from_call_tracer(root: Optional[Dict[str, Any]]) -> List[CallFrame]:
    """
    Flatten geth ``callTracer`` output into frames, assigning trace paths.

    Args:
        root: Top-level call object with nested ``calls``

    Returns:
        Frames in depth-first pre-order
    """
    if not root:
        return []

    frames: List[CallFrame] = []
    stack: List[Tuple[Dict[str, Any], TracePath]] = [(root, TracePath())]

    while stack:
        call, path = stack.pop()
        children = call.get("calls") or []
        frames.append(CallFrame(
            from_address=call.get("from"),
            to_address=call.get("to"),
            trace_address=path,
            call_type=call.get("type") or "CALL",
            gas=call.get("gas") or "0x0",
            gas_used=call.get("gasUsed") or "0x0",
            input=call.get("input") or "0x",
            output=call.get("output"),
            value=call.get("value"),
            error=call.get("error") or call.get("revertReason"),
            subtraces=len(children),
            logs=_logs_from(call.get("logs")),
        ))
        # Reversed so children pop in emission order
        for index in range(len(children) - 1, -1, -1):
            stack.append((children[index], path.child(index)))

    return frames


def frames_from_parity_trace(traces: Optional[Sequence[Dict[str, Any]]]) -> List[CallFrame]:
    """Convert Parity/OpenEthereum flat traces (``traceAddress`` records) to frames."""
    frames: List[CallFrame] = []
    for trace in traces or ():
        action = trace.get("action") or {}
        result = trace.get("result") or {}
        trace_type = trace.get("type") or "call"

        if trace_type == "create":
            to_address = result.get("address")
            data = action.get("init") or "0x"
            output = result.get("code")
        else:
            to_address = action.get("to")
            data = action.get("input") or "0x"
            output = result.get("output")

        call_type = action.get("callType") or trace_type
        frames.append(CallFrame(
            from_address=action.get("from"),
            to_address=to_address,
            trace_address=TracePath.of(trace.get("traceAddress")),
            call_type=call_type.upper(),
            gas=action.get("gas") or "0x0",
            gas_used=result.get("gasUsed") or "0x0",
            input=data,
            output=output,
            value=action.get("value"),
            error=trace.get("error"),
            subtraces=int(trace.get("subtraces") or 0),
        ))
    return frames


def normalize_trace(raw: Any) -> List[CallFrame]:
    """
    Turn any supported tracer output into flat frames.

    Accepts a geth ``callTracer`` object, a Parity ``trace_call`` result
    (``{"trace": [...]}``) or a bare list of Parity trace records.
    """
    if not raw:
        return []
    if isinstance(raw, list):
        return frames_from_parity_trace(raw)
    if isinstance(raw, dict):
        if "trace" in raw and isinstance(raw["trace"], list):
            return frames_from_parity_trace(raw["trace"])
        return frames_from_call_tracer(raw)
    raise ValueError(f"Unsupported trace format: {type(raw).__name__}")


def collect_addresses(forest: Sequence[CallNode], to_address: Optional[str] = None) -> List[str]:
    """Unique lowercase call targets, top-level target first."""
    seen: Set[str] = set()
    addresses: List[str] = []

    def add(address: Optional[str]) -> None:
        if not address:
            return
        address = address.lower()
        if address not in seen:
            seen.add(address)
            addresses.append(address)

    add(to_address)
    for root in forest:
        for node in root.walk():
            add(node.to_address)
    return addresses


def _log_position(log: Dict[str, Any]) -> int:
    """Number of child calls made before the log was emitted (geth ``position``)."""
    position = log.get("position")
    if isinstance(position, int):
        return position
    if isinstance(position, str):
        try:
            return int(position, 16) if position[:2] in ("0x", "0X") else int(position)
        except ValueError:
            logger.warning(f"Ignoring malformed log position {position!r}")
    return 0


def _emission_order(node: CallNode) -> List[Union[Dict[str, Any], CallNode]]:
    """Interleave a node's logs with its child calls by log position."""
    logs = sorted(node.frame.logs, key=_log_position)
    ordered: List[Union[Dict[str, Any], CallNode]] = []
    pending = 0
    for index, child in enumerate(node.calls):
        while pending < len(logs) and _log_position(logs[pending]) <= index:
            ordered.append(logs[pending])
            pending += 1
        ordered.append(child)
    ordered.extend(logs[pending:])
    return ordered


def extract_events(forest: Sequence[CallNode]) -> List[Dict[str, Any]]:
    """
    Collect logs in emission order.

    A log's ``position`` counts the child calls its frame had made when it
    was emitted, so a frame's logs are interleaved with its children's.
    Logs without a position come before the frame's children.
    """
    events: List[Dict[str, Any]] = []
    for root in forest:
        stack = [(root, iter(_emission_order(root)))]
        while stack:
            node, items = stack[-1]
            item = next(items, None)
            if item is None:
                stack.pop()
            elif isinstance(item, CallNode):
                stack.append((item, iter(_emission_order(item))))
            else:
                event = dict(item)
                event["index"] = len(events)
                event.setdefault("traceAddress", node.trace_address.to_list())
                events.append(event)
    return events


def events_from_receipt(receipt: Optional[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
    """Logs of a mined transaction, or None when the receipt carries none."""
    logs = (receipt or {}).get("logs")
    if not isinstance(logs, list):
        return None
    events: List[Dict[str, Any]] = []
    for log in logs:
        event = dict(log)
        event["index"] = len(events)
        events.append(event)
    return events

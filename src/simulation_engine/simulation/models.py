"""Request and result models for transaction simulation."""
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..metadata.models import ContractMetadata
from ..rpc.gateway import to_hex
from ..tracing.assembler import CallNode
from ..tracing.state_diff import BalanceDiff, StorageDiff

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULT_CALL_GAS = 1_000_000

Quantity = Union[str, int]

# Fields reported in the block header echo, with their defaults
BLOCK_HEADER_DEFAULTS: Dict[str, str] = {
    "number": "0",
    "hash": "0x0",
    "baseFeePerGas": "0x0",
    "blobGasUsed": "0x0",
    "difficulty": "0x0",
    "excessBlobGas": "0x0",
    "extraData": "0x0",
    "gasLimit": "0x0",
    "gasUsed": "0x0",
    "logsBloom": "0x0",
    "miner": "0x0",
    "nonce": "0x0",
    "size": "0x0",
    "stateRoot": "0x0",
    "timestamp": "0",
}


class SimulationMode(str, Enum):
    """Where a simulation is executed."""
    UPSTREAM = "upstream"  # debug_traceCall on the upstream nodes
    SANDBOX = "sandbox"    # fresh forked anvil instance


class BundleMode(str, Enum):
    PARALLEL = "parallel"
    ATOMIC = "atomic"


class SimulationStage(str, Enum):
    """Progress of one simulation request."""
    VALIDATING = "validating"
    EXECUTING = "executing"
    ASSEMBLING = "assembling"
    ENRICHING = "enriching"
    DONE = "done"
    FAILED = "failed"


class StateObject(BaseModel):
    """Balance and storage overrides for one account."""
    model_config = ConfigDict(extra="ignore")

    balance: Optional[Quantity] = None
    storage: Dict[str, str] = Field(default_factory=dict)


class SimulationRequest(BaseModel):
    """A hypothetical transaction to simulate."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    from_address: Optional[str] = Field(default=None, alias="from")
    to_address: Optional[str] = Field(default=None, alias="to")
    input: str = Field(default="0x", description="Call data")
    value: Optional[Quantity] = Field(default=None, description="Wei, hex or decimal")
    gas: Optional[Quantity] = Field(default=None, description="Gas limit, hex or decimal")
    gas_price: Optional[Quantity] = Field(default=None, alias="gasPrice")
    block_number: Quantity = Field(default="latest", alias="blockNumber")
    generate_access_list: bool = Field(default=False, alias="generateAccessList")
    state_objects: Dict[str, StateObject] = Field(default_factory=dict, alias="stateObjects")
    access_list: List[Dict[str, Any]] = Field(default_factory=list, alias="accessList")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SimulationRequest":
        """Parse a JSON body, reporting schema errors as ``ValidationError``."""
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(f"Invalid field '{field_name}': {first.get('msg')}", field=field_name) from e

    def validate_fields(self) -> None:
        """
        Check required fields and quantity formats.

        Raises:
            ValidationError: Naming the first offending field
        """
        for field_name, address in (("from", self.from_address), ("to", self.to_address)):
            if not address:
                raise ValidationError(f"Missing required field: '{field_name}'", field=field_name)
            if not ADDRESS_PATTERN.match(address):
                raise ValidationError(
                    f"Invalid '{field_name}' address format: {address}",
                    field=field_name
                )

        if not isinstance(self.input, str) or not self.input.startswith(("0x", "0X")):
            raise ValidationError("Invalid 'input': expected 0x-prefixed hex data", field="input")

        for field_name, quantity in (
            ("value", self.value),
            ("gas", self.gas),
            ("gasPrice", self.gas_price),
            ("blockNumber", self.block_number),
        ):
            if quantity is None:
                continue
            try:
                to_hex(quantity)
            except ValueError as e:
                raise ValidationError(f"Invalid '{field_name}': {e}", field=field_name) from e

        for address, state in self.state_objects.items():
            if not ADDRESS_PATTERN.match(address):
                raise ValidationError(
                    f"Invalid 'stateObjects' address: {address}",
                    field="stateObjects"
                )
            if state.balance is not None:
                try:
                    to_hex(state.balance)
                except ValueError as e:
                    raise ValidationError(
                        f"Invalid 'stateObjects' balance for {address}: {e}",
                        field="stateObjects"
                    ) from e

    @property
    def block(self) -> str:
        return to_hex(self.block_number)

    @property
    def is_latest(self) -> bool:
        return self.block == "latest"

    def to_call(self) -> Dict[str, Any]:
        """Call object for eth_call style RPC methods."""
        call: Dict[str, Any] = {
            "from": self.from_address,
            "to": self.to_address,
            "data": self.input or "0x",
            "value": to_hex(self.value if self.value is not None else 0),
            "gas": to_hex(self.gas if self.gas is not None else DEFAULT_CALL_GAS),
        }
        if self.gas_price is not None:
            call["gasPrice"] = to_hex(self.gas_price)
        if self.access_list and not self.generate_access_list:
            call["accessList"] = self.access_list
        return call

    def state_overrides(self) -> Optional[Dict[str, Any]]:
        """``stateObjects`` in geth state override format."""
        if not self.state_objects:
            return None

        overrides: Dict[str, Any] = {}
        for address, state in self.state_objects.items():
            override: Dict[str, Any] = {}
            if state.balance is not None:
                override["balance"] = to_hex(state.balance)
            if state.storage:
                override["stateDiff"] = dict(state.storage)
            overrides[address] = override
        return overrides


@dataclass
class RawExecution:
    """Unprocessed tracer output for one execution."""
    call_trace: Any
    prestate: Any
    receipt: Optional[Dict[str, Any]] = None
    transaction_hash: Optional[str] = None


@dataclass
class SimulationResult:
    """Normalized outcome of one simulation."""
    request: SimulationRequest
    mode: SimulationMode
    call_trace: List[CallNode] = field(default_factory=list)
    storage_diff: StorageDiff = field(default_factory=dict)
    balance_diff: BalanceDiff = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    block_header: Dict[str, Any] = field(default_factory=dict)
    access_list: List[Dict[str, Any]] = field(default_factory=list)
    contracts: Dict[str, ContractMetadata] = field(default_factory=dict)

    output: str = "0x"
    gas_used: str = "0x0"
    status: bool = True
    error: Optional[str] = None
    transaction_hash: Optional[str] = None

    simulation_time_ms: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    def header(self) -> Dict[str, Any]:
        """Block header echo with every field present."""
        source = self.block_header or {}
        return {key: source.get(key) or default for key, default in BLOCK_HEADER_DEFAULTS.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the API response shape."""
        request = self.request
        call = request.to_call()
        header = self.header()

        transaction: Dict[str, Any] = {
            "from": request.from_address,
            "to": request.to_address,
            "input": request.input or "0x",
            "value": call["value"],
            "gas": call["gas"],
            "gasPrice": call.get("gasPrice", "0x0"),
            "gasUsed": self.gas_used,
            "output": self.output,
            "status": self.status,
            "error": self.error,
            "timestamp": header["timestamp"],
            "blockHeader": header,
            "callTrace": [node.to_dict() for node in self.call_trace],
            "balanceDiff": self.balance_diff,
            "storageDiff": self.storage_diff,
            "events": self.events,
        }
        if self.transaction_hash:
            transaction["hash"] = self.transaction_hash

        return {
            "transaction": transaction,
            "generated_access_list": self.access_list,
            "contracts": {address: meta.to_dict() for address, meta in self.contracts.items()},
            "mode": self.mode.value,
            "simulation_time_ms": self.simulation_time_ms,
        }

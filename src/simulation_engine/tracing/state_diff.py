"""Storage and balance change extraction from pre/post state snapshots."""
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ZERO_BALANCE = "0x0"
ZERO_WORD = "0x" + "0" * 64

# address -> slot -> {"from", "to"}
StorageDiff = Dict[str, Dict[str, Dict[str, str]]]
# address -> {"from", "to"}
BalanceDiff = Dict[str, Dict[str, str]]


def _parse_quantity(value: Any) -> Optional[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value[:2] in ("0x", "0X"):
        try:
            return int(value, 16) if len(value) > 2 else 0
        except ValueError:
            return None
    return None


def values_differ(before: Any, after: Any) -> bool:
    """Compare numerically when both sides are hex, otherwise as strings."""
    before_num = _parse_quantity(before)
    after_num = _parse_quantity(after)
    if before_num is not None and after_num is not None:
        return before_num != after_num
    return str(before) != str(after)


def split_state_diff(
    pre: Optional[Mapping[str, Mapping[str, Any]]],
    post: Optional[Mapping[str, Mapping[str, Any]]]
) -> Tuple[StorageDiff, BalanceDiff]:
    """
    Split a prestate snapshot pair into storage and balance changes.

    Input is geth prestateTracer diffMode output, where ``post`` carries only
    the fields that changed. An address present on both sides with no
    ``balance`` in ``post`` therefore kept its balance. Addresses missing on
    one side (created or destroyed accounts) count as zero, and so do slots
    missing from ``post`` since geth omits slots cleared to zero. Only
    changed values are reported, and an address with no changed slots is
    left out of the storage diff entirely.

    Args:
        pre: address -> {"balance", "storage"} before execution
        post: address -> {"balance", "storage"} after execution

    Returns:
        Tuple of (storage diff, balance diff)
    """
    pre = pre or {}
    post = post or {}

    storage_diff: StorageDiff = {}
    balance_diff: BalanceDiff = {}

    addresses = list(dict.fromkeys([*pre.keys(), *post.keys()]))

    for address in addresses:
        before = pre.get(address) or {}
        after = post.get(address) or {}

        balance_before = before.get("balance") or ZERO_BALANCE
        if address in pre and address in post and "balance" not in after:
            balance_after = balance_before
        else:
            balance_after = after.get("balance") or ZERO_BALANCE
        if values_differ(balance_before, balance_after):
            balance_diff[address] = {"from": balance_before, "to": balance_after}

        storage_before = before.get("storage") or {}
        storage_after = after.get("storage") or {}
        changes: Dict[str, Dict[str, str]] = {}

        for slot in dict.fromkeys([*storage_before.keys(), *storage_after.keys()]):
            slot_before = storage_before.get(slot) or ZERO_WORD
            slot_after = storage_after.get(slot) or ZERO_WORD
            if values_differ(slot_before, slot_after):
                changes[slot] = {"from": slot_before, "to": slot_after}

        if changes:
            storage_diff[address] = changes

    logger.debug(
        f"State diff: {len(balance_diff)} balance change(s), "
        f"{sum(len(s) for s in storage_diff.values())} storage change(s)"
    )
    return storage_diff, balance_diff


def _parity_change(entry: Any, zero: str) -> Optional[Dict[str, str]]:
    """Decode one Parity diff entry ("=", "*", "+" or "-") into {from, to}."""
    if entry == "=" or not isinstance(entry, Mapping):
        return None
    if "*" in entry:
        change = entry["*"] or {}
        before, after = change.get("from", zero), change.get("to", zero)
    elif "+" in entry:
        before, after = zero, entry["+"]
    elif "-" in entry:
        before, after = entry["-"], zero
    else:
        return None

    if not values_differ(before, after):
        return None
    return {"from": before, "to": after}


def split_parity_state_diff(
    state_diff: Optional[Mapping[str, Mapping[str, Any]]]
) -> Tuple[StorageDiff, BalanceDiff]:
    """
    Split a Parity ``stateDiff`` into storage and balance changes.

    Args:
        state_diff: address -> {"balance", "storage", ...} Parity diff entries

    Returns:
        Tuple of (storage diff, balance diff)
    """
    storage_diff: StorageDiff = {}
    balance_diff: BalanceDiff = {}

    for address, diff in (state_diff or {}).items():
        balance_change = _parity_change(diff.get("balance", "="), ZERO_BALANCE)
        if balance_change:
            balance_diff[address] = balance_change

        changes: Dict[str, Dict[str, str]] = {}
        for slot, entry in (diff.get("storage") or {}).items():
            slot_change = _parity_change(entry, ZERO_WORD)
            if slot_change:
                changes[slot] = slot_change
        if changes:
            storage_diff[address] = changes

    return storage_diff, balance_diff


def split_prestate_result(raw: Any) -> Tuple[StorageDiff, BalanceDiff]:
    """Dispatch on tracer output shape: geth ``{pre, post}`` or Parity ``stateDiff``."""
    if not raw:
        return {}, {}
    if "pre" in raw or "post" in raw:
        return split_state_diff(raw.get("pre"), raw.get("post"))
    if "stateDiff" in raw:
        return split_parity_state_diff(raw.get("stateDiff"))
    raise ValueError("Unsupported state diff format")

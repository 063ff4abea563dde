"""
Hex quantity helpers for EVM JSON-RPC payloads.
"""

from typing import Any, Optional, Union


def to_hex(value: int) -> str:
    if value < 0:
        raise ValueError(f"Block quantities cannot be negative: {value}")
    return hex(value)


def from_hex(value: Any) -> Optional[int]:
    """Decode a JSON-RPC quantity. Returns None for null values."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text in ("", "0x"):
        return 0
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def block_tag(block: Union[int, str]) -> str:
    if isinstance(block, int):
        return to_hex(block)
    return block


def has_code(code: Optional[str]) -> bool:
    """True when eth_getCode returned executable bytecode"""
    if not code:
        return False
    stripped = code.lower()
    return stripped not in ("0x", "0x0", "0x00")


def normalize_address(address: str) -> str:
    text = (address or "").strip().lower()
    if not text.startswith("0x") or len(text) != 42:
        raise ValueError(f"Invalid contract address: {address}")
    try:
        int(text, 16)
    except ValueError:
        raise ValueError(f"Invalid contract address: {address}")
    return text

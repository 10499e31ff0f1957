"""
Minimal Solidity ABI codec.

Supports the types the guests and the verifier call layout need:
    uint256, bool, bytes32 (static) and bytes (dynamic)

Layout follows the Solidity ABI spec: static values occupy one 32-byte head
word; dynamic values put an offset in the head and length + padded data in
the tail.
"""

from typing import List, Sequence, Tuple

from zkcompose.crypto import keccak256

WORD = 32
UINT256_MAX = 2**256 - 1

STATIC_TYPES = ("uint256", "bool", "bytes32")
DYNAMIC_TYPES = ("bytes",)


def function_selector(signature: str) -> bytes:
    """First 4 bytes of keccak256 of the canonical function signature."""
    return keccak256(signature.encode("ascii"))[:4]


def _pad_right(data: bytes) -> bytes:
    remainder = len(data) % WORD
    if remainder:
        data = data + bytes(WORD - remainder)
    return data


def _encode_static(abi_type: str, value) -> bytes:
    if abi_type == "uint256":
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"uint256 expects int, got {type(value).__name__}")
        if not 0 <= value <= UINT256_MAX:
            raise ValueError(f"uint256 out of range: {value}")
        return value.to_bytes(WORD, "big")
    if abi_type == "bool":
        if not isinstance(value, bool):
            raise TypeError(f"bool expects bool, got {type(value).__name__}")
        return int(value).to_bytes(WORD, "big")
    if abi_type == "bytes32":
        if not isinstance(value, (bytes, bytearray)) or len(value) != WORD:
            raise ValueError("bytes32 expects exactly 32 bytes")
        return bytes(value)
    raise ValueError(f"Unsupported ABI type: {abi_type}")


def encode(types: Sequence[str], values: Sequence) -> bytes:
    """
    ABI-encode a tuple of values.

    Args:
        types: ABI type names
        values: Python values (int, bool, bytes)

    Returns:
        Encoded bytes (a multiple of 32)
    """
    if len(types) != len(values):
        raise ValueError(f"Expected {len(types)} values, got {len(values)}")

    head_size = WORD * len(types)
    heads: List[bytes] = []
    tails: List[bytes] = []
    tail_offset = head_size

    for abi_type, value in zip(types, values):
        if abi_type in DYNAMIC_TYPES:
            if not isinstance(value, (bytes, bytearray)):
                raise TypeError(f"bytes expects bytes, got {type(value).__name__}")
            tail = len(value).to_bytes(WORD, "big") + _pad_right(bytes(value))
            heads.append(tail_offset.to_bytes(WORD, "big"))
            tails.append(tail)
            tail_offset += len(tail)
        else:
            heads.append(_encode_static(abi_type, value))

    return b"".join(heads) + b"".join(tails)


def decode(types: Sequence[str], data: bytes) -> Tuple:
    """
    Decode ABI-encoded data into a tuple of Python values.

    Raises:
        ValueError: if the data is truncated or malformed
    """
    if len(data) < WORD * len(types):
        raise ValueError(f"ABI data too short: {len(data)} bytes for {len(types)} values")

    values = []
    for index, abi_type in enumerate(types):
        word = data[index * WORD:(index + 1) * WORD]
        if abi_type == "uint256":
            values.append(int.from_bytes(word, "big"))
        elif abi_type == "bool":
            number = int.from_bytes(word, "big")
            if number > 1:
                raise ValueError(f"Invalid bool word: {number}")
            values.append(bool(number))
        elif abi_type == "bytes32":
            values.append(word)
        elif abi_type == "bytes":
            offset = int.from_bytes(word, "big")
            if offset + WORD > len(data):
                raise ValueError("bytes offset out of range")
            length = int.from_bytes(data[offset:offset + WORD], "big")
            start = offset + WORD
            if start + length > len(data):
                raise ValueError("bytes length out of range")
            values.append(data[start:start + length])
        else:
            raise ValueError(f"Unsupported ABI type: {abi_type}")

    return tuple(values)

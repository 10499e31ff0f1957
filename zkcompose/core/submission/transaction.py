"""
Transaction encoding and signing.

Implements EIP-155 legacy transactions:

    rlp([nonce, gas_price, gas, to, value, data, v, r, s])

The signing hash is keccak256 of rlp([nonce, gas_price, gas, to, value,
data, chain_id, 0, 0]) and v = recovery_id + chain_id * 2 + 35.
"""

from dataclasses import dataclass
from typing import List, Union

from zkcompose.crypto import SignerKey, hex_to_bytes, keccak256, sign_recoverable

RLPItem = Union[bytes, int, List["RLPItem"]]


# =============================================================================
# RLP
# =============================================================================


def _int_to_min_bytes(value: int) -> bytes:
    if value < 0:
        raise ValueError("RLP cannot encode negative integers")
    if value == 0:
        return b""
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def _length_prefix(length: int, offset: int) -> bytes:
    if length < 56:
        return bytes([offset + length])
    length_bytes = _int_to_min_bytes(length)
    return bytes([offset + 55 + len(length_bytes)]) + length_bytes


def rlp_encode(item: RLPItem) -> bytes:
    """Recursive Length Prefix encoding of bytes, ints and nested lists."""
    if isinstance(item, int):
        item = _int_to_min_bytes(item)

    if isinstance(item, (bytes, bytearray)):
        item = bytes(item)
        if len(item) == 1 and item[0] < 0x80:
            return item
        return _length_prefix(len(item), 0x80) + item

    if isinstance(item, list):
        payload = b"".join(rlp_encode(element) for element in item)
        return _length_prefix(len(payload), 0xC0) + payload

    raise TypeError(f"Cannot RLP-encode {type(item).__name__}")


# =============================================================================
# Legacy Transaction
# =============================================================================


@dataclass(frozen=True)
class LegacyTransaction:
    """An unsigned EIP-155 transaction."""
    nonce: int
    gas_price: int
    gas: int
    to: str
    value: int
    data: bytes
    chain_id: int

    def _fields(self) -> List[RLPItem]:
        return [self.nonce, self.gas_price, self.gas, hex_to_bytes(self.to), self.value, self.data]

    def signing_hash(self) -> bytes:
        return keccak256(rlp_encode(self._fields() + [self.chain_id, 0, 0]))

    def sign(self, key: SignerKey) -> "SignedTransaction":
        recovery_id, r, s = sign_recoverable(self.signing_hash(), key.private_key)
        v = recovery_id + self.chain_id * 2 + 35
        raw = rlp_encode(self._fields() + [v, r, s])
        return SignedTransaction(tx=self, v=v, r=r, s=s, raw=raw)


@dataclass(frozen=True)
class SignedTransaction:
    tx: LegacyTransaction
    v: int
    r: int
    s: int
    raw: bytes

    @property
    def tx_hash(self) -> bytes:
        return keccak256(self.raw)

    @property
    def recovery_id(self) -> int:
        return self.v - self.tx.chain_id * 2 - 35

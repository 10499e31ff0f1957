"""
Cryptographic primitives for zkcompose.

This module provides:
- Hashing functions (SHA-256 for journals and image ids, Keccak-256 for EVM)
- Key handling for the transaction signer (secp256k1)
- Recoverable ECDSA signatures used by the submission pipeline

Design Notes:
-------------
Journal digests and program image ids are SHA-256, matching the content
addressing used by the proving service. Everything that touches the chain
(function selectors, transaction hashes, addresses) uses Keccak-256.
"""

import hashlib
from dataclasses import dataclass
from typing import Tuple

from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

DIGEST_SIZE = 32


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.

    Used for: journal digests, program image ids, claim digests.
    """
    return hashlib.sha256(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: function selectors, transaction hashes, address derivation.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


# =============================================================================
# Keys
# =============================================================================


@dataclass(frozen=True)
class SignerKey:
    """
    A secp256k1 signing key for chain submissions.

    Attributes:
        private_key: 32-byte secret key
        public_key: 64-byte uncompressed public key (x || y)
    """
    private_key: bytes
    public_key: bytes

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "SignerKey":
        """Build a signer from a hex private key (with or without 0x)."""
        private_key = hex_to_bytes(private_key_hex)
        return cls(private_key=private_key, public_key=private_key_to_public_key(private_key))

    @property
    def address(self) -> str:
        """Address = last 20 bytes of keccak256(public_key), 0x-prefixed."""
        return public_key_to_address(self.public_key)

    def __repr__(self) -> str:
        return f"SignerKey(address={self.address})"


def private_key_to_public_key(private_key: bytes) -> bytes:
    """
    Derive public key from private key.

    Args:
        private_key: 32-byte private key

    Returns:
        64-byte uncompressed public key
    """
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")
    key_int = int.from_bytes(private_key, "big")
    if not 1 <= key_int < SECP256K1_ORDER:
        raise ValueError("Private key out of range")

    public_key_point = secp256k1.privtopub(private_key)
    x_bytes = public_key_point[0].to_bytes(32, byteorder="big")
    y_bytes = public_key_point[1].to_bytes(32, byteorder="big")
    return x_bytes + y_bytes


def public_key_to_address(public_key: bytes) -> str:
    """Derive a 0x-prefixed address from a 64-byte public key."""
    return "0x" + keccak256(public_key)[-20:].hex()


# =============================================================================
# Recoverable Signatures
# =============================================================================


def sign_recoverable(message_hash: bytes, private_key: bytes) -> Tuple[int, int, int]:
    """
    Sign a 32-byte hash and return (recovery_id, r, s).

    s is normalized to the lower half of the curve order (EIP-2); the
    recovery id is flipped along with it so the signature still recovers
    to the signer.
    """
    if len(message_hash) != 32:
        raise ValueError("Message hash must be 32 bytes")
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")

    # py_ecc returns v in {27, 28}
    v, r, s = secp256k1.ecdsa_raw_sign(message_hash, private_key)
    recovery_id = v - 27

    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s
        recovery_id ^= 1

    return recovery_id, r, s


def recover_address(message_hash: bytes, recovery_id: int, r: int, s: int) -> str:
    """Recover the signer address of a recoverable signature."""
    x, y = secp256k1.ecdsa_raw_recover(message_hash, (27 + recovery_id, r, s))
    public_key = x.to_bytes(32, byteorder="big") + y.to_bytes(32, byteorder="big")
    return public_key_to_address(public_key)


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


def is_valid_address(address: str) -> bool:
    """Check if string is a valid address format."""
    if not address.startswith("0x"):
        return False
    if len(address) != 42:  # 0x + 40 hex chars
        return False
    try:
        int(address, 16)
        return True
    except ValueError:
        return False

"""
Receipt data model - Claims, receipts and assumptions.

A Claim commits to "program `program_id` ran and publicly output data whose
hash is `journal_digest`". A Receipt carries the journal, the opaque seal
(proof bytes) and the claim it attests to. An Assumption is a claim embedded
in a proving request that must be resolved by a receipt with exactly the same
claim before the containing proof is sound.

All types are frozen: ownership of a receipt moves from stage to stage, it is
never mutated in place.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from zkcompose.crypto import DIGEST_SIZE, bytes_to_hex, hex_to_bytes, sha256


def journal_digest(journal: bytes) -> bytes:
    """Digest of a journal, as committed in a claim."""
    return sha256(journal)


# =============================================================================
# Program Image
# =============================================================================


@dataclass(frozen=True)
class ProgramImage:
    """
    A compiled, content-addressed program.

    Identity is `image_id`, the SHA-256 of `binary`.
    """
    name: str = field(compare=False)
    image_id: bytes
    binary: bytes = field(repr=False, compare=False)

    @classmethod
    def from_binary(cls, name: str, binary: bytes) -> "ProgramImage":
        return cls(name=name, image_id=sha256(binary), binary=binary)

    @property
    def image_id_hex(self) -> str:
        return bytes_to_hex(self.image_id)


# =============================================================================
# Claim
# =============================================================================


@dataclass(frozen=True)
class Claim:
    """Commitment pairing a program image id with a journal digest."""
    program_id: bytes
    journal_digest: bytes

    def __post_init__(self):
        if len(self.program_id) != DIGEST_SIZE:
            raise ValueError(f"program_id must be {DIGEST_SIZE} bytes, got {len(self.program_id)}")
        if len(self.journal_digest) != DIGEST_SIZE:
            raise ValueError(
                f"journal_digest must be {DIGEST_SIZE} bytes, got {len(self.journal_digest)}"
            )

    @classmethod
    def for_journal(cls, program_id: bytes, journal: bytes) -> "Claim":
        return cls(program_id=program_id, journal_digest=journal_digest(journal))

    def digest(self) -> bytes:
        """Single 32-byte commitment to the whole claim."""
        return sha256(b"claim" + self.program_id + self.journal_digest)

    def short(self) -> str:
        return f"{self.program_id.hex()[:12]}/{self.journal_digest.hex()[:12]}"

    def to_dict(self) -> dict:
        return {
            "program_id": bytes_to_hex(self.program_id),
            "journal_digest": bytes_to_hex(self.journal_digest),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Claim":
        return cls(
            program_id=hex_to_bytes(data["program_id"]),
            journal_digest=hex_to_bytes(data["journal_digest"]),
        )


# =============================================================================
# Receipt
# =============================================================================


@dataclass(frozen=True)
class Receipt:
    """
    A proof (seal) plus the journal and claim it attests to.

    Attributes:
        journal: Public output committed by the program
        seal: Opaque proof bytes
        claim: The claim the seal proves
        assumptions: Claims this proof was conditioned on and that were resolved
        unresolved: Claims the proof still depends on (conditional receipt)
    """
    journal: bytes
    seal: bytes
    claim: Claim
    assumptions: Tuple[Claim, ...] = ()
    unresolved: Tuple[Claim, ...] = ()

    def digest_matches(self) -> bool:
        """True when the claim's journal digest is the hash of this journal."""
        return journal_digest(self.journal) == self.claim.journal_digest

    @property
    def is_conditional(self) -> bool:
        return bool(self.unresolved)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "journal": bytes_to_hex(self.journal),
            "seal": bytes_to_hex(self.seal),
            "claim": self.claim.to_dict(),
            "assumptions": [c.to_dict() for c in self.assumptions],
            "unresolved": [c.to_dict() for c in self.unresolved],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Receipt":
        """Create from dict."""
        return cls(
            journal=hex_to_bytes(data["journal"]),
            seal=hex_to_bytes(data["seal"]),
            claim=Claim.from_dict(data["claim"]),
            assumptions=tuple(Claim.from_dict(c) for c in data.get("assumptions", [])),
            unresolved=tuple(Claim.from_dict(c) for c in data.get("unresolved", [])),
        )


# =============================================================================
# Assumption
# =============================================================================


@dataclass(frozen=True)
class Assumption:
    """
    An unresolved reference to a claim, embedded in a proving request.

    `receipt` is the receipt offered to resolve it, if the caller has one.
    Equality and hashing use the claim only.
    """
    claim: Claim
    receipt: Optional[Receipt] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "Assumption":
        return cls(claim=receipt.claim, receipt=receipt)

    @property
    def is_resolvable(self) -> bool:
        return self.receipt is not None and self.receipt.claim == self.claim

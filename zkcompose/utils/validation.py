"""
Input Validation - Checks on everything that crosses a trust boundary.

Receipts are validated on every ingestion: from the local prover, from the
remote proving service, and again by the Composition Manager. Inputs are
bounded before they are sent anywhere.

All functions return (is_valid, error_message).
"""

from typing import Any, Optional, Tuple

from zkcompose.core.receipt import Receipt, journal_digest

# =============================================================================
# Constants
# =============================================================================

MAX_INPUT_SIZE = 1024 * 1024  # 1 MB private/public input
MAX_JOURNAL_SIZE = 64 * 1024
MAX_SEAL_SIZE = 4 * 1024 * 1024


# =============================================================================
# Primitive Validation
# =============================================================================


def validate_bytes(
    data: Any,
    name: str,
    max_length: Optional[int] = None,
) -> Tuple[bool, str]:
    """
    Validate bytes input.

    Args:
        data: Data to validate
        name: Field name for error messages
        max_length: Maximum allowed length

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(data, (bytes, bytearray)):
        return False, f"{name} must be bytes, got {type(data).__name__}"

    if max_length is not None and len(data) > max_length:
        return False, f"{name} exceeds max length {max_length}, got {len(data)}"

    return True, ""


def validate_input(data: Any, name: str = "input") -> Tuple[bool, str]:
    """Validate a program input."""
    return validate_bytes(data, name, max_length=MAX_INPUT_SIZE)


# =============================================================================
# Receipt Validation
# =============================================================================


def validate_digest_binding(receipt: Receipt) -> Tuple[bool, str]:
    """Check that the claim's journal digest is the hash of the journal."""
    ok, err = validate_bytes(receipt.journal, "journal", max_length=MAX_JOURNAL_SIZE)
    if not ok:
        return False, err

    actual = journal_digest(receipt.journal)
    if actual != receipt.claim.journal_digest:
        return False, (
            f"journal digest mismatch: claim has {receipt.claim.journal_digest.hex()[:16]}..., "
            f"journal hashes to {actual.hex()[:16]}..."
        )
    return True, ""


def validate_receipt(receipt: Any, expected_image_id: bytes) -> Tuple[bool, str]:
    """
    Validate a receipt produced for `expected_image_id`.

    Checks type, seal bounds, program id and digest binding.
    """
    if not isinstance(receipt, Receipt):
        return False, f"receipt must be Receipt, got {type(receipt).__name__}"

    ok, err = validate_bytes(receipt.seal, "seal", max_length=MAX_SEAL_SIZE)
    if not ok:
        return False, err
    if not receipt.seal:
        return False, "empty seal"

    if receipt.claim.program_id != expected_image_id:
        return False, (
            f"program id mismatch: expected {expected_image_id.hex()[:16]}..., "
            f"got {receipt.claim.program_id.hex()[:16]}..."
        )

    return validate_digest_binding(receipt)

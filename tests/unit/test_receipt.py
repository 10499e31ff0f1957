"""
Unit tests for the receipt data model.

Tests cover:
1. Claim construction and digest binding
2. Receipt serialization
3. Assumption equality and resolvability
"""

import pytest

from zkcompose.core.receipt import Assumption, Claim, ProgramImage, Receipt, journal_digest
from zkcompose.crypto import sha256


@pytest.fixture
def image():
    return ProgramImage.from_binary("demo", b"demo-binary")


@pytest.fixture
def receipt(image):
    journal = b"public output"
    return Receipt(
        journal=journal,
        seal=b"\x01" * 64,
        claim=Claim.for_journal(image.image_id, journal),
    )


class TestProgramImage:
    """Tests for content-addressed images."""

    def test_image_id_is_content_hash(self, image):
        assert image.image_id == sha256(b"demo-binary")
        assert image.image_id_hex.startswith("0x")

    def test_identity_ignores_name(self):
        a = ProgramImage.from_binary("a", b"same")
        b = ProgramImage.from_binary("b", b"same")
        assert a == b


class TestClaim:
    """Tests for claims."""

    def test_for_journal(self, image):
        claim = Claim.for_journal(image.image_id, b"out")
        assert claim.journal_digest == journal_digest(b"out")

    def test_wrong_lengths_rejected(self, image):
        with pytest.raises(ValueError):
            Claim(program_id=b"\x00" * 31, journal_digest=bytes(32))
        with pytest.raises(ValueError):
            Claim(program_id=image.image_id, journal_digest=b"")

    def test_digest_depends_on_both_fields(self, image):
        a = Claim.for_journal(image.image_id, b"x")
        b = Claim.for_journal(image.image_id, b"y")
        c = Claim.for_journal(sha256(b"other"), b"x")
        assert len({a.digest(), b.digest(), c.digest()}) == 3

    def test_claims_are_hashable(self, image):
        claim = Claim.for_journal(image.image_id, b"x")
        assert claim in {Claim.for_journal(image.image_id, b"x")}


class TestReceipt:
    """Tests for receipts."""

    def test_digest_matches(self, receipt):
        assert receipt.digest_matches()

    def test_tampered_journal_detected(self, receipt):
        tampered = Receipt(journal=b"other output", seal=receipt.seal, claim=receipt.claim)
        assert not tampered.digest_matches()

    def test_to_dict_and_back(self, receipt, image):
        """Receipts should survive dict conversion, assumptions included."""
        inner = Claim.for_journal(sha256(b"inner"), b"inner journal")
        composed = Receipt(
            journal=receipt.journal,
            seal=receipt.seal,
            claim=receipt.claim,
            assumptions=(inner,),
        )

        restored = Receipt.from_dict(composed.to_dict())

        assert restored == composed
        assert restored.assumptions == (inner,)
        assert not restored.is_conditional

    def test_frozen(self, receipt):
        with pytest.raises(AttributeError):
            receipt.journal = b"changed"


class TestAssumption:
    """Tests for assumptions."""

    def test_from_receipt_is_resolvable(self, receipt):
        assumption = Assumption.from_receipt(receipt)
        assert assumption.claim == receipt.claim
        assert assumption.is_resolvable

    def test_bare_claim_not_resolvable(self, receipt):
        assert not Assumption(claim=receipt.claim).is_resolvable

    def test_equality_uses_claim_only(self, receipt):
        assert Assumption.from_receipt(receipt) == Assumption(claim=receipt.claim)

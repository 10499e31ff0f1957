"""
Submission Pipeline - Hands a composed receipt to the on-chain verifier.

Call layout (the verifier contract's external interface):

    selector(function_signature) || abi.encode(bytes journal, bytes seal)

where `seal` is optionally prefixed with a 4-byte verifier selector that
routes it to the right verifier implementation.

Failure handling:
- TxRejected is fatal: the proof itself may be the defect, never retried
- TxDropped / NonceConflict are retried with a fresh nonce; the payload is
  unchanged, so resubmission is idempotent at the application level
- The node must report the configured chain id before anything is signed
- Every broadcast hash is handed to `on_sent` so a restarted process can
  wait for it instead of sending the calldata again
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from zkcompose.core import abi
from zkcompose.core.errors import NonceConflict, TxDropped, TxRejected
from zkcompose.core.receipt import Receipt
from zkcompose.core.submission.chain import ChainClient, parse_quantity
from zkcompose.core.submission.transaction import LegacyTransaction
from zkcompose.crypto import bytes_to_hex
from zkcompose.utils.logger import get_logger

logger = get_logger("submission")

DEFAULT_FUNCTION_SIGNATURE = "submit(bytes,bytes)"


@dataclass(frozen=True)
class TxResult:
    """Outcome of a confirmed submission."""
    tx_hash: str
    status: str
    block_number: int
    confirmations: int
    attempts: int
    nonce: int
    gas_used: int = 0

    @property
    def success(self) -> bool:
        return self.status == "confirmed"

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status,
            "block_number": self.block_number,
            "confirmations": self.confirmations,
            "attempts": self.attempts,
            "nonce": self.nonce,
            "gas_used": self.gas_used,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TxResult":
        return cls(**data)


def encode_calldata(
    receipt: Receipt,
    function_signature: str = DEFAULT_FUNCTION_SIGNATURE,
    seal_selector: bytes = b"",
) -> bytes:
    """Encode `(journal, seal)` for the verifier contract."""
    if seal_selector and len(seal_selector) != 4:
        raise ValueError("seal selector must be 4 bytes")
    return abi.function_selector(function_signature) + abi.encode(
        ["bytes", "bytes"],
        [receipt.journal, seal_selector + receipt.seal],
    )


class SubmissionPipeline:
    """
    Encodes, signs, sends and confirms verifier transactions.

    Blocking; the Composition Manager runs it on a worker thread.
    """

    def __init__(
        self,
        chain: ChainClient,
        function_signature: str = DEFAULT_FUNCTION_SIGNATURE,
        seal_selector: bytes = b"",
        confirmations: int = 1,
        tx_timeout: float = 300.0,
        poll_interval: float = 2.0,
        max_resubmits: int = 3,
        gas_multiplier: float = 1.2,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            chain: Chain client bound to a signer and the verifier contract
            function_signature: Verifier entry point
            seal_selector: Optional 4-byte prefix for the seal
            confirmations: Blocks required on top of inclusion (1 = included)
            tx_timeout: Seconds to wait for confirmation before TxDropped
            poll_interval: Seconds between receipt polls
            max_resubmits: Resubmissions after TxDropped/NonceConflict
            gas_multiplier: Headroom applied to the gas estimate
        """
        self.chain = chain
        self.function_signature = function_signature
        self.seal_selector = seal_selector
        self.confirmations = max(1, confirmations)
        self.tx_timeout = tx_timeout
        self.poll_interval = poll_interval
        self.max_resubmits = max_resubmits
        self.gas_multiplier = gas_multiplier
        self._sleep = sleep
        self._clock = clock
        self.submissions = 0
        self._chain_checked = False

    def submit(
        self,
        receipt: Receipt,
        on_sent: Optional[Callable[[str, int], None]] = None,
        pending: Optional[Tuple[str, int]] = None,
    ) -> TxResult:
        """
        Submit a receipt and wait for confirmation.

        Args:
            receipt: Composed receipt
            on_sent: Called with (tx_hash, nonce) after each broadcast and
                before waiting for it to be mined
            pending: (tx_hash, nonce) of a transaction broadcast by an earlier
                process; it is awaited before anything new is sent

        Raises:
            TxRejected: the verifier (or the node) refused the transaction
            TxDropped / NonceConflict: resubmissions exhausted
        """
        if not self._chain_checked:
            self.chain.check_chain_id()
            self._chain_checked = True

        if pending is not None:
            tx_hash, nonce = pending
            logger.info(f"Waiting for transaction {tx_hash} (nonce {nonce}) sent before restart")
            try:
                result = self._wait_for_confirmation(tx_hash, nonce, attempt=1)
            except TxDropped as e:
                logger.warning(f"Earlier transaction {tx_hash} did not confirm ({e}); sending anew")
            else:
                self.submissions += 1
                return result

        calldata = encode_calldata(receipt, self.function_signature, self.seal_selector)
        gas = int(self.chain.estimate_gas(calldata) * self.gas_multiplier)

        last_error: Optional[Union[TxDropped, NonceConflict]] = None
        for attempt in range(1, self.max_resubmits + 2):
            try:
                result = self._send_once(calldata, gas, attempt, on_sent)
            except (TxDropped, NonceConflict) as e:
                last_error = e
                logger.warning(f"Submission attempt {attempt} failed ({e.kind}): {e}")
                continue
            self.submissions += 1
            return result

        raise last_error

    def _send_once(
        self,
        calldata: bytes,
        gas: int,
        attempt: int,
        on_sent: Optional[Callable[[str, int], None]] = None,
    ) -> TxResult:
        nonce = self.chain.pending_nonce()
        tx = LegacyTransaction(
            nonce=nonce,
            gas_price=self.chain.gas_price(),
            gas=gas,
            to=self.chain.contract,
            value=0,
            data=calldata,
            chain_id=self.chain.chain_id,
        )
        signed = tx.sign(self.chain.signer)
        tx_hash = bytes_to_hex(signed.tx_hash)

        logger.info(f"Sending verifier transaction {tx_hash} (nonce {nonce}, attempt {attempt})")
        returned = self.chain.send_raw_transaction(signed.raw)
        if returned and returned.lower() != tx_hash:
            logger.warning(f"Node reported hash {returned}, expected {tx_hash}")
        if on_sent is not None:
            on_sent(tx_hash, nonce)

        return self._wait_for_confirmation(tx_hash, nonce, attempt)

    def _wait_for_confirmation(self, tx_hash: str, nonce: int, attempt: int) -> TxResult:
        deadline = self._clock() + self.tx_timeout
        while True:
            receipt = self.chain.transaction_receipt(tx_hash)
            # Some nodes hand out receipts for pending transactions with a null block
            if receipt is not None and receipt.get("blockNumber") is not None:
                if parse_quantity(receipt.get("status"), "receipt status") != 1:
                    raise TxRejected(f"Transaction {tx_hash} reverted on-chain")

                block_number = parse_quantity(receipt["blockNumber"], "receipt block")
                depth = self.chain.block_number() - block_number + 1
                if depth >= self.confirmations:
                    logger.info(f"Transaction {tx_hash} confirmed in block {block_number}")
                    return TxResult(
                        tx_hash=tx_hash,
                        status="confirmed",
                        block_number=block_number,
                        confirmations=depth,
                        attempts=attempt,
                        nonce=nonce,
                        gas_used=parse_quantity(receipt.get("gasUsed", "0x0"), "gas used"),
                    )

            if self._clock() >= deadline:
                raise TxDropped(f"Transaction {tx_hash} not confirmed within {self.tx_timeout:.0f}s")
            self._sleep(self.poll_interval)

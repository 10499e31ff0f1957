"""
Local Prover - Private proof generation on this machine.

The local prover executes a program against private input and returns a
Receipt. Proving itself is an opaque capability; two are provided:

1. DevExecutor (runs the bundled development guests, simulated seal)
2. SubprocessProver (drives an external prover CLI)

Proving is synchronous and CPU-bound. Callers must run it off any
latency-sensitive path (see `LocalBackend`, which uses a worker pool).
"""

import json
import secrets
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from zkcompose.core.errors import ExecutionFault, UnknownProgram
from zkcompose.core.receipt import Assumption, Claim, ProgramImage, Receipt
from zkcompose.crypto import bytes_to_hex
from zkcompose.guests import GUESTS, GuestFn, run_guest
from zkcompose.utils.logger import get_logger
from zkcompose.utils.validation import validate_input, validate_receipt

logger = get_logger("prover.local")

DEV_SEAL_PREFIX = b"DEV0"


class ProvingCapability(Protocol):
    """Anything that can execute and prove a program image."""

    def execute(
        self,
        image: ProgramImage,
        private_input: bytes,
        public_input: bytes,
        assumptions: Sequence[Assumption],
    ) -> Receipt:
        ...


# =============================================================================
# Dev Executor (Simulated proving)
# =============================================================================


class DevExecutor:
    """
    Runs the bundled guests and wraps the journal in a simulated seal.

    Seals are random per run, so two runs with identical input yield the same
    claim but different seals, like a randomized proof system.
    """

    def __init__(
        self,
        image_ids: Dict[str, bytes],
        guests: Optional[Dict[str, GuestFn]] = None,
        proving_delay_ms: int = 0,
        seal_size: int = 256,
    ):
        """
        Args:
            image_ids: Program name -> image id (for guests that verify claims)
            guests: Program name -> guest function, defaults to the bundled guests
            proving_delay_ms: Simulated proving time in milliseconds
            seal_size: Size of the simulated seal
        """
        self.image_ids = dict(image_ids)
        self.guests = dict(guests or GUESTS)
        self.proving_delay_ms = proving_delay_ms
        self.seal_size = seal_size
        self.proofs_generated = 0

    def execute(
        self,
        image: ProgramImage,
        private_input: bytes,
        public_input: bytes,
        assumptions: Sequence[Assumption],
    ) -> Receipt:
        guest = self.guests.get(image.name)
        if guest is None or self.image_ids.get(image.name) != image.image_id:
            raise UnknownProgram(f"No guest for image {image.image_id_hex}")

        if self.proving_delay_ms:
            time.sleep(self.proving_delay_ms / 1000)

        journal, resolved, unresolved = run_guest(
            guest,
            private_input=private_input,
            public_input=public_input,
            assumptions=assumptions,
            image_ids=self.image_ids,
        )

        self.proofs_generated += 1
        return Receipt(
            journal=journal,
            seal=DEV_SEAL_PREFIX + secrets.token_bytes(self.seal_size - len(DEV_SEAL_PREFIX)),
            claim=Claim.for_journal(image.image_id, journal),
            assumptions=resolved,
            unresolved=unresolved,
        )


# =============================================================================
# Subprocess Prover (external prover CLI)
# =============================================================================


class SubprocessProver:
    """
    Real prover driven through an external command.

    The command is a list of arguments; `{image}`, `{input}`, `{public}`,
    `{assumptions}` and `{receipt}` are replaced with file paths. The command
    must write the receipt as JSON (`Receipt.to_dict` layout) to `{receipt}`
    and exit 0. A nonzero exit is an execution fault.
    """

    def __init__(self, command: List[str], timeout: int = 3600):
        """
        Args:
            command: Argument template, e.g. ["r0prove", "--elf", "{image}", ...]
            timeout: Maximum proving time in seconds
        """
        self.command = list(command)
        self.timeout = timeout
        self.proofs_generated = 0

    def execute(
        self,
        image: ProgramImage,
        private_input: bytes,
        public_input: bytes,
        assumptions: Sequence[Assumption],
    ) -> Receipt:
        with tempfile.TemporaryDirectory(prefix="zkcompose-") as workdir:
            work = Path(workdir)
            paths = {
                "image": work / "program.bin",
                "input": work / "input.bin",
                "public": work / "public.bin",
                "assumptions": work / "assumptions.json",
                "receipt": work / "receipt.json",
            }
            paths["image"].write_bytes(image.binary)
            paths["input"].write_bytes(private_input)
            paths["public"].write_bytes(public_input)
            paths["assumptions"].write_text(json.dumps([
                a.receipt.to_dict() if a.receipt is not None else {"claim": a.claim.to_dict()}
                for a in assumptions
            ]))

            args = [arg.format(**{k: str(v) for k, v in paths.items()}) for arg in self.command]
            try:
                result = subprocess.run(
                    args,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                raise ExecutionFault(f"Prover timed out after {self.timeout}s")
            except FileNotFoundError:
                raise ExecutionFault(f"Prover command not found: {args[0]}")

            if result.returncode != 0:
                raise ExecutionFault(
                    f"Prover exited with {result.returncode}",
                    detail=result.stderr.strip()[-500:],
                )
            if not paths["receipt"].exists():
                raise ExecutionFault("Prover produced no receipt")

            try:
                receipt = Receipt.from_dict(json.loads(paths["receipt"].read_text()))
            except (ValueError, KeyError, TypeError) as e:
                raise ExecutionFault(f"Prover wrote an unreadable receipt: {e}")

        self.proofs_generated += 1
        return receipt


# =============================================================================
# Local Prover Client
# =============================================================================


class LocalProverClient:
    """
    Produces receipts for private inputs on this machine.

    Validates every receipt the capability hands back before returning it.
    """

    def __init__(self, capability: ProvingCapability):
        self.capability = capability
        self.proofs_generated = 0

    def prove_local(
        self,
        image: ProgramImage,
        private_input: bytes,
        assumptions: Sequence[Assumption] = (),
        public_input: bytes = b"",
    ) -> Receipt:
        """
        Execute and prove `image` against `private_input`. Blocks.

        Raises:
            ExecutionFault: if the program aborts or yields an invalid receipt
            UnknownProgram: if the capability cannot run the image
        """
        ok, err = validate_input(private_input, "private_input")
        if not ok:
            raise ExecutionFault(err)

        start_time = time.time()
        logger.info(f"Local proving {image.name} ({image.image_id_hex[:18]}...)")

        try:
            receipt = self.capability.execute(image, private_input, public_input, assumptions)
        except ExecutionFault as e:
            logger.warning(f"Local execution of {image.name} faulted: {e}")
            raise

        ok, err = validate_receipt(receipt, image.image_id)
        if not ok:
            raise ExecutionFault(f"Local prover returned an invalid receipt: {err}")

        proving_time_ms = int((time.time() - start_time) * 1000)
        self.proofs_generated += 1
        logger.info(
            f"Local proof for {image.name} ready in {proving_time_ms}ms, "
            f"journal {bytes_to_hex(receipt.journal)[:18]}..."
        )
        return receipt

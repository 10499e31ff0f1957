"""
Remote Prover Client - Delegated proving on a remote service.

`submit` enqueues a job and returns a handle immediately; `poll` is a cheap
status call. The client never loops on `poll` itself: the polling cadence and
the overall timeout belong to the caller (see `RemoteBackend`).

The remote service is trusted for availability only. Every receipt it
returns is checked here against the requested image id, and its journal
digest is recomputed locally.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from zkcompose.core.errors import (
    ComposeError,
    CompositionInvalid,
    RemoteRejected,
    TransientServiceError,
    UnknownProgram,
)
from zkcompose.core.prover.service import ProvingService, build_job_request
from zkcompose.core.receipt import Assumption, ProgramImage, Receipt
from zkcompose.crypto import bytes_to_hex, hex_to_bytes
from zkcompose.utils.logger import get_logger
from zkcompose.utils.validation import validate_input, validate_receipt

logger = get_logger("prover.remote")


# =============================================================================
# Handles and Poll Results
# =============================================================================


@dataclass(frozen=True)
class JobHandle:
    """Opaque reference to a job on the remote service."""
    job_id: str
    image_id: bytes
    submitted_at: int = field(default_factory=lambda: int(time.time()), compare=False)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "image_id": bytes_to_hex(self.image_id),
            "submitted_at": self.submitted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobHandle":
        return cls(
            job_id=data["job_id"],
            image_id=hex_to_bytes(data["image_id"]),
            submitted_at=data.get("submitted_at", 0),
        )


class PollStatus(Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    """Outcome of one poll: Pending, a verified Receipt, or Failed(reason)."""
    status: PollStatus
    receipt: Optional[Receipt] = None
    reason: str = ""

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(PollStatus.PENDING)

    @classmethod
    def complete(cls, receipt: Receipt) -> "PollResult":
        return cls(PollStatus.COMPLETE, receipt=receipt)

    @classmethod
    def failed(cls, reason: str) -> "PollResult":
        return cls(PollStatus.FAILED, reason=reason)


# =============================================================================
# Remote Prover Client
# =============================================================================


class RemoteProverClient:
    """
    Client for a remote proving service.

    Retries transient submission failures with exponential backoff; treats
    every attempt as a new remote job, since the service is not assumed to
    deduplicate identical payloads.
    """

    def __init__(
        self,
        service: ProvingService,
        registry,
        submit_retries: int = 3,
        retry_backoff: float = 1.0,
        proof_kind: str = "groth16",
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            service: Transport to the proving service
            registry: ProgramRegistry used to validate image ids
            submit_retries: Attempts for a submission before giving up
            retry_backoff: Initial backoff between attempts in seconds (doubles)
            proof_kind: Requested proof kind ("groth16" is chain-verifiable)
            sleep: Sleep function (injected for tests)
        """
        self.service = service
        self.registry = registry
        self.submit_retries = max(1, submit_retries)
        self.retry_backoff = retry_backoff
        self.proof_kind = proof_kind
        self._sleep = sleep
        self.submissions = 0

    def submit(
        self,
        image: ProgramImage,
        public_input: bytes,
        assumptions: Sequence[Assumption] = (),
    ) -> JobHandle:
        """
        Enqueue a proving job and return its handle. No proof exists yet.

        Raises:
            UnknownProgram: if the image is not in the registry
            RemoteRejected: if the service refuses the request
            TransientServiceError: if every attempt failed transiently
        """
        if not self.registry.contains_id(image.image_id):
            raise UnknownProgram(f"Image {image.image_id_hex} is not registered")

        ok, err = validate_input(public_input, "public_input")
        if not ok:
            raise RemoteRejected(err)

        request = build_job_request(
            image.image_id_hex,
            public_input,
            list(assumptions),
            proof_kind=self.proof_kind,
        )

        last_error: Optional[TransientServiceError] = None
        for attempt in range(1, self.submit_retries + 1):
            try:
                self.service.upload_image(image.image_id_hex, image.binary)
                job_id = self.service.create_job(request)
            except TransientServiceError as e:
                last_error = e
                logger.warning(
                    f"Submit {image.name} failed (attempt {attempt}/{self.submit_retries}): {e}"
                )
                if attempt < self.submit_retries:
                    self._sleep(self.retry_backoff * (2 ** (attempt - 1)))
                continue

            self.submissions += 1
            logger.info(f"Submitted {image.name} as remote job {job_id}")
            return JobHandle(job_id=job_id, image_id=image.image_id)

        raise TransientServiceError(
            f"Submit {image.name} failed after {self.submit_retries} attempts",
            detail=str(last_error),
        )

    def poll(self, handle: JobHandle) -> PollResult:
        """
        Query a job once.

        Raises:
            TransientServiceError: if the status call failed transiently
            RemoteRejected: if the service refuses the status call
            CompositionInvalid: if a returned receipt fails verification
        """
        status = self.service.job_status(handle.job_id)

        if status.status == "pending":
            return PollResult.pending()
        if status.status == "failed":
            return PollResult.failed(status.error or "remote job failed")

        try:
            receipt = status.receipt.to_receipt()
        except ValueError as e:
            raise CompositionInvalid(f"Job {handle.job_id} returned a malformed receipt", detail=str(e))

        ok, err = validate_receipt(receipt, handle.image_id)
        if not ok:
            logger.error(f"Rejecting receipt of job {handle.job_id}: {err}")
            raise CompositionInvalid(f"Job {handle.job_id} returned an invalid receipt", detail=err)

        return PollResult.complete(receipt)

    def cancel(self, handle: JobHandle) -> None:
        """Best-effort cancellation. Never raises."""
        try:
            self.service.cancel_job(handle.job_id)
            logger.info(f"Requested cancellation of remote job {handle.job_id}")
        except ComposeError as e:
            logger.warning(f"Cancel of remote job {handle.job_id} failed: {e}")

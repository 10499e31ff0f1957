"""
Orchestration jobs - Per-request state of the two-stage proving flow.

    CREATED -> LOCAL_PROVING -> LOCAL_PROOF_READY -> REMOTE_SUBMITTED
            -> REMOTE_POLLING -> COMPOSED_READY -> DONE

FAILED is reachable from every non-terminal state. DONE and FAILED are
terminal. A job only ever moves to the next state in the chain or to
FAILED; anything else raises InvalidTransition.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from zkcompose.core.errors import ComposeError, InvalidTransition
from zkcompose.core.prover.remote import JobHandle
from zkcompose.core.receipt import Receipt
from zkcompose.core.submission.pipeline import TxResult
from zkcompose.crypto import bytes_to_hex, hex_to_bytes


class JobState(Enum):
    CREATED = "created"
    LOCAL_PROVING = "local_proving"
    LOCAL_PROOF_READY = "local_proof_ready"
    REMOTE_SUBMITTED = "remote_submitted"
    REMOTE_POLLING = "remote_polling"
    COMPOSED_READY = "composed_ready"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.FAILED)


_CHAIN = [
    JobState.CREATED,
    JobState.LOCAL_PROVING,
    JobState.LOCAL_PROOF_READY,
    JobState.REMOTE_SUBMITTED,
    JobState.REMOTE_POLLING,
    JobState.COMPOSED_READY,
    JobState.DONE,
]


class FailureReason(Enum):
    INNER_PROOF_FAILED = "InnerProofFailed"
    REMOTE_PROOF_FAILED = "RemoteProofFailed"
    COMPOSITION_INVALID = "CompositionInvalid"
    SUBMISSION_FAILED = "SubmissionFailed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class Failure:
    """Why a job failed: the coarse reason plus the taxonomy error that caused it."""
    reason: FailureReason
    error_kind: str
    message: str

    @classmethod
    def from_error(cls, reason: FailureReason, error: ComposeError) -> "Failure":
        return cls(reason=reason, error_kind=error.kind, message=str(error))

    def __str__(self) -> str:
        return f"{self.reason.value} [{self.error_kind}]: {self.message}"

    def to_dict(self) -> dict:
        return {"reason": self.reason.value, "error_kind": self.error_kind, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "Failure":
        return cls(
            reason=FailureReason(data["reason"]),
            error_kind=data["error_kind"],
            message=data["message"],
        )


def new_job_id() -> str:
    return secrets.token_hex(8)


@dataclass
class OrchestrationJob:
    """
    One end-to-end composition request.

    Mutated only by the Composition Manager and the Submission Pipeline
    handoff; every mutation goes through `transition` or one of the
    `record_*` methods, which refuse to touch a terminal job.
    """
    job_id: str
    inner_program: str
    outer_program: str
    private_input: bytes = field(repr=False)
    public_input: Optional[bytes] = None
    state: JobState = JobState.CREATED
    inner_receipt: Optional[Receipt] = None
    outer_receipt: Optional[Receipt] = None
    submission_result: Optional[TxResult] = None
    pending_tx: Optional[dict] = None
    remote_handle: Optional[JobHandle] = None
    abandoned_handles: List[str] = field(default_factory=list)
    failure: Optional[Failure] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def _touch(self) -> None:
        self.updated_at = int(time.time())

    def _require_live(self, action: str) -> None:
        if self.is_terminal:
            raise InvalidTransition(f"Job {self.job_id} is {self.state.value}; cannot {action}")

    def transition(self, new_state: JobState) -> None:
        """Advance to the next state. FAILED must go through `fail`."""
        self._require_live(f"move to {new_state.value}")
        if new_state is JobState.FAILED:
            raise InvalidTransition("Use fail() to enter FAILED")

        current = _CHAIN.index(self.state)
        if _CHAIN.index(new_state) != current + 1:
            raise InvalidTransition(
                f"Job {self.job_id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state
        self._touch()

    def fail(self, failure: Failure) -> None:
        self._require_live("fail")
        self.state = JobState.FAILED
        self.failure = failure
        self._touch()

    def record_inner_receipt(self, receipt: Receipt) -> None:
        self._require_live("record inner receipt")
        if self.inner_receipt is not None:
            raise InvalidTransition(f"Job {self.job_id} already has an inner receipt")
        self.inner_receipt = receipt
        self._touch()

    def record_remote_handle(self, handle: JobHandle) -> None:
        self._require_live("record remote handle")
        if self.remote_handle is not None:
            raise InvalidTransition(
                f"Job {self.job_id} already has outstanding remote job {self.remote_handle.job_id}"
            )
        self.remote_handle = handle
        self._touch()

    def record_outer_receipt(self, receipt: Receipt) -> None:
        self._require_live("record outer receipt")
        if self.outer_receipt is not None:
            raise InvalidTransition(f"Job {self.job_id} already has an outer receipt")
        self.outer_receipt = receipt
        self._touch()

    def record_pending_tx(self, tx_hash: str, nonce: int) -> None:
        """Remember a broadcast verifier transaction until it confirms."""
        self._require_live("record pending transaction")
        if self.state is not JobState.COMPOSED_READY:
            raise InvalidTransition(f"Job {self.job_id} is {self.state.value}; nothing to submit")
        self.pending_tx = {"tx_hash": tx_hash, "nonce": nonce}
        self._touch()

    def record_submission(self, result: TxResult) -> None:
        self._require_live("record submission")
        self.submission_result = result
        self.pending_tx = None
        self._touch()

    def abandon_remote_handle(self) -> None:
        """Forget the outstanding remote job; results for it will be discarded."""
        if self.remote_handle is not None and self.remote_handle.job_id not in self.abandoned_handles:
            self.abandoned_handles.append(self.remote_handle.job_id)

    def status_line(self) -> str:
        if self.failure is not None:
            return f"{self.state.value}: {self.failure}"
        return self.state.value

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "job_id": self.job_id,
            "inner_program": self.inner_program,
            "outer_program": self.outer_program,
            "private_input": bytes_to_hex(self.private_input),
            "public_input": bytes_to_hex(self.public_input) if self.public_input is not None else None,
            "state": self.state.value,
            "inner_receipt": self.inner_receipt.to_dict() if self.inner_receipt else None,
            "outer_receipt": self.outer_receipt.to_dict() if self.outer_receipt else None,
            "submission_result": self.submission_result.to_dict() if self.submission_result else None,
            "pending_tx": dict(self.pending_tx) if self.pending_tx else None,
            "remote_handle": self.remote_handle.to_dict() if self.remote_handle else None,
            "abandoned_handles": list(self.abandoned_handles),
            "failure": self.failure.to_dict() if self.failure else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestrationJob":
        """Create from dict."""
        return cls(
            job_id=data["job_id"],
            inner_program=data["inner_program"],
            outer_program=data["outer_program"],
            private_input=hex_to_bytes(data["private_input"]),
            public_input=hex_to_bytes(data["public_input"]) if data.get("public_input") is not None else None,
            state=JobState(data["state"]),
            inner_receipt=Receipt.from_dict(data["inner_receipt"]) if data.get("inner_receipt") else None,
            outer_receipt=Receipt.from_dict(data["outer_receipt"]) if data.get("outer_receipt") else None,
            submission_result=(
                TxResult.from_dict(data["submission_result"]) if data.get("submission_result") else None
            ),
            pending_tx=dict(data["pending_tx"]) if data.get("pending_tx") else None,
            remote_handle=JobHandle.from_dict(data["remote_handle"]) if data.get("remote_handle") else None,
            abandoned_handles=list(data.get("abandoned_handles", [])),
            failure=Failure.from_dict(data["failure"]) if data.get("failure") else None,
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
        )

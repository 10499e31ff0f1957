"""
Error taxonomy for proof composition.

Every failure that reaches the Composition Manager is one of these classes.
Low-level errors (HTTP, JSON, subprocess, RPC) are classified into them at the
component boundary that observed them.

    ComposeError
    ├── UnknownProgram          fatal
    ├── ExecutionFault          fatal, deterministic
    ├── TransientServiceError   retryable (inside the remote client)
    ├── RemoteRejected          fatal
    ├── Timeout                 fatal for the job
    ├── CompositionInvalid      fatal
    ├── TxRejected              fatal
    ├── TxDropped               retryable by resubmission
    ├── NonceConflict           retryable by resubmission
    └── Cancelled               fatal
"""

from typing import Optional


class ComposeError(Exception):
    """Base class for all orchestration errors."""

    kind = "ComposeError"
    retryable = False

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class UnknownProgram(ComposeError):
    """Program name or image id is not in the registry."""
    kind = "UnknownProgram"


class ExecutionFault(ComposeError):
    """The guest program aborted. Re-running with the same input reproduces it."""
    kind = "ExecutionFault"


class TransientServiceError(ComposeError):
    """Network error or 5xx from the proving service."""
    kind = "TransientServiceError"
    retryable = True


class RemoteRejected(ComposeError):
    """The proving service refused the request (malformed, unknown assumption)."""
    kind = "RemoteRejected"


class Timeout(ComposeError):
    """Remote job abandoned after the overall polling timeout."""
    kind = "Timeout"


class CompositionInvalid(ComposeError):
    """Binding mismatch between a receipt and what was requested."""
    kind = "CompositionInvalid"


class TxRejected(ComposeError):
    """The chain or the verifier contract rejected the transaction."""
    kind = "TxRejected"


class TxDropped(ComposeError):
    """Transaction was not mined in time."""
    kind = "TxDropped"
    retryable = True


class NonceConflict(ComposeError):
    """Transaction nonce already used or replaced."""
    kind = "NonceConflict"
    retryable = True


class Cancelled(ComposeError):
    """Job cancelled by the caller."""
    kind = "Cancelled"


class InvalidTransition(Exception):
    """A job state change that would move backward or leave a terminal state."""

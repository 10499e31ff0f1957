"""Local and remote proving backends"""
from zkcompose.core.prover.backend import (
    LocalBackend,
    PollingPolicy,
    ProveRequest,
    ProvingBackend,
    RemoteBackend,
)
from zkcompose.core.prover.local import DevExecutor, LocalProverClient, SubprocessProver
from zkcompose.core.prover.remote import JobHandle, PollResult, PollStatus, RemoteProverClient
from zkcompose.core.prover.service import DevProvingService, HttpProvingService

__all__ = [
    "LocalBackend",
    "PollingPolicy",
    "ProveRequest",
    "ProvingBackend",
    "RemoteBackend",
    "DevExecutor",
    "LocalProverClient",
    "SubprocessProver",
    "JobHandle",
    "PollResult",
    "PollStatus",
    "RemoteProverClient",
    "DevProvingService",
    "HttpProvingService",
]

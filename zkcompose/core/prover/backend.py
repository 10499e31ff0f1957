"""
Prover backends - One capability interface over local and remote proving.

The Composition Manager only sees `ProvingBackend.produce(request) -> Receipt`.
Two variants exist:

- LocalBackend: runs the blocking local prover on a worker pool
- RemoteBackend: submits to the remote service and owns the polling loop
  (bounded exponential backoff, overall timeout, late-result discard)

Backends report their suspend points to a `ProgressObserver`, which lets the
manager persist the remote handle before polling starts.
"""

import asyncio
import collections
import functools
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Protocol, Tuple

from zkcompose.core.errors import RemoteRejected, Timeout, TransientServiceError
from zkcompose.core.prover.local import LocalProverClient
from zkcompose.core.prover.remote import JobHandle, PollStatus, RemoteProverClient
from zkcompose.core.receipt import Assumption, ProgramImage, Receipt
from zkcompose.utils.logger import get_logger

logger = get_logger("prover.backend")

# Abandoned remote job ids remembered per backend to suppress repeated cancels
ABANDONED_HISTORY = 1024


@dataclass(frozen=True)
class PollingPolicy:
    """Cadence and deadline of the remote polling loop (seconds)."""
    initial_interval: float = 5.0
    backoff_factor: float = 2.0
    max_interval: float = 60.0
    timeout: float = 30 * 60.0

    def intervals(self):
        """Yield successive sleep intervals, capped at max_interval."""
        interval = self.initial_interval
        while True:
            yield min(interval, self.max_interval)
            interval = min(interval * self.backoff_factor, self.max_interval)


@dataclass(frozen=True)
class ProveRequest:
    """What to prove: an image, its inputs and the assumptions it may use."""
    image: ProgramImage
    private_input: bytes = b""
    public_input: bytes = b""
    assumptions: Tuple[Assumption, ...] = ()


class ProgressObserver(Protocol):
    def on_submitted(self, handle: JobHandle) -> None: ...

    def on_polling(self, handle: JobHandle) -> None: ...


class _NullObserver:
    def on_submitted(self, handle: JobHandle) -> None:
        pass

    def on_polling(self, handle: JobHandle) -> None:
        pass


class ProvingBackend:
    """Shared interface of the proving variants."""

    name = "backend"

    async def produce(
        self,
        request: ProveRequest,
        observer: Optional[ProgressObserver] = None,
    ) -> Receipt:
        raise NotImplementedError


# =============================================================================
# Local Backend
# =============================================================================


class LocalBackend(ProvingBackend):
    """
    Runs `LocalProverClient.prove_local` on a worker pool.

    Cancellation does not interrupt the worker; the computation runs to
    completion and its result is dropped.
    """

    name = "local"

    def __init__(self, client: LocalProverClient, executor: Optional[Executor] = None):
        """
        Args:
            client: Local prover client
            executor: Worker pool; None uses the event loop's default pool
        """
        self.client = client
        self.executor = executor

    async def produce(
        self,
        request: ProveRequest,
        observer: Optional[ProgressObserver] = None,
    ) -> Receipt:
        loop = asyncio.get_running_loop()
        call = functools.partial(
            self.client.prove_local,
            request.image,
            request.private_input,
            request.assumptions,
            request.public_input,
        )
        return await loop.run_in_executor(self.executor, call)


# =============================================================================
# Remote Backend
# =============================================================================


class RemoteBackend(ProvingBackend):
    """
    Submit-then-poll driver around `RemoteProverClient`.

    Transient poll errors are tolerated until the deadline. On timeout or
    cancellation the handle is abandoned: a best-effort cancel is sent and
    any receipt that still arrives for it is discarded.
    """

    name = "remote"

    def __init__(
        self,
        client: RemoteProverClient,
        policy: Optional[PollingPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.policy = policy or PollingPolicy()
        self._clock = clock
        self.abandoned: Deque[str] = collections.deque(maxlen=ABANDONED_HISTORY)

    async def produce(
        self,
        request: ProveRequest,
        observer: Optional[ProgressObserver] = None,
    ) -> Receipt:
        observer = observer or _NullObserver()
        handle = await asyncio.to_thread(
            self.client.submit,
            request.image,
            request.public_input,
            request.assumptions,
        )
        observer.on_submitted(handle)
        return await self.wait(handle, observer)

    async def resume(
        self,
        handle: JobHandle,
        observer: Optional[ProgressObserver] = None,
    ) -> Receipt:
        """Continue polling a handle persisted before a restart."""
        logger.info(f"Resuming remote job {handle.job_id}")
        return await self.wait(handle, observer, started_at=handle.submitted_at or None)

    async def abandon(self, handle: JobHandle) -> None:
        """Stop tracking a handle and ask the service to cancel it on a worker thread."""
        if handle.job_id in self.abandoned:
            return
        self.abandoned.append(handle.job_id)
        await asyncio.to_thread(self.client.cancel, handle)

    async def wait(
        self,
        handle: JobHandle,
        observer: Optional[ProgressObserver] = None,
        started_at: Optional[float] = None,
    ) -> Receipt:
        """
        Poll until a receipt arrives, the job fails, or the timeout expires.

        Raises:
            Timeout: deadline passed (handle abandoned)
            RemoteRejected: the remote job failed
            CompositionInvalid: the returned receipt failed verification
        """
        observer = observer or _NullObserver()
        observer.on_polling(handle)

        deadline = (started_at if started_at is not None else self._clock()) + self.policy.timeout
        intervals = self.policy.intervals()
        polls = 0

        try:
            while True:
                if self._clock() >= deadline:
                    break

                try:
                    result = await asyncio.to_thread(self.client.poll, handle)
                except TransientServiceError as e:
                    logger.warning(f"Poll of remote job {handle.job_id} failed transiently: {e}")
                    result = None
                polls += 1

                if result is not None and result.status is not PollStatus.PENDING:
                    if self._clock() > deadline:
                        logger.warning(
                            f"Discarding result of remote job {handle.job_id} observed after the deadline"
                        )
                        break
                    if result.status is PollStatus.FAILED:
                        raise RemoteRejected(
                            f"Remote job {handle.job_id} failed",
                            detail=result.reason,
                        )
                    logger.info(f"Remote job {handle.job_id} complete after {polls} polls")
                    return result.receipt

                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(next(intervals), remaining))
        except asyncio.CancelledError:
            logger.info(f"Polling of remote job {handle.job_id} cancelled")
            await self.abandon(handle)
            raise

        await self.abandon(handle)
        raise Timeout(
            f"Remote job {handle.job_id} exceeded {self.policy.timeout:.0f}s",
            detail=f"{polls} polls",
        )

"""
Composition Manager - Drives the two-stage proving flow per job.

For each OrchestrationJob:

1. Prove the inner program locally against the private input
2. Build an Assumption from the inner receipt's claim and have the outer
   program proved (remotely, typically) with that assumption attached
3. Validate the binding between both receipts before anything is spent
4. Hand the composed receipt to the Submission Pipeline

Binding checks happen here, client-side, because on-chain verification is
the expensive failure point: a mismatched composition must never reach a
transaction.

The manager is backend-agnostic: it only uses `ProvingBackend.produce`
(and `resume` where the backend offers it). Jobs are independent and may
run concurrently on one manager; the only shared state is the read-only
program registry.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set, Tuple

from zkcompose.core.errors import (
    Cancelled,
    ComposeError,
    CompositionInvalid,
    ExecutionFault,
    InvalidTransition,
    RemoteRejected,
    TxRejected,
)
from zkcompose.core.composition.job import (
    Failure,
    FailureReason,
    JobState,
    OrchestrationJob,
    new_job_id,
)
from zkcompose.core.prover.backend import ProveRequest, ProvingBackend
from zkcompose.core.prover.remote import JobHandle
from zkcompose.core.receipt import Assumption, ProgramImage, Receipt
from zkcompose.core.registry import ProgramRegistry
from zkcompose.core.submission.pipeline import SubmissionPipeline
from zkcompose.guests import IS_EVEN, MOD_EXP
from zkcompose.utils.logger import get_logger
from zkcompose.utils.validation import validate_digest_binding, validate_input, validate_receipt

logger = get_logger("composition")


# =============================================================================
# Composition Validation
# =============================================================================


def validate_composition(inner: Receipt, outer: Receipt, outer_image: ProgramImage) -> None:
    """
    Check that `outer` soundly absorbed `inner` as an assumption.

    (a) the outer journal digest matches its claim
    (b) the outer claim is for the requested outer image
    (c) no assumption of the outer proof remains unresolved
    (d) the inner claim is among the outer proof's resolved assumptions,
        matching program id and journal digest exactly

    Raises:
        CompositionInvalid: on any violation
    """
    ok, err = validate_digest_binding(outer)
    if not ok:
        raise CompositionInvalid("Outer receipt digest binding failed", detail=err)

    if outer.claim.program_id != outer_image.image_id:
        raise CompositionInvalid(
            f"Outer receipt is for image {outer.claim.program_id.hex()[:16]}..., "
            f"expected {outer_image.name} ({outer_image.image_id.hex()[:16]}...)"
        )

    if outer.unresolved:
        raise CompositionInvalid(
            f"Outer receipt has {len(outer.unresolved)} unresolved assumption(s)",
            detail=", ".join(c.short() for c in outer.unresolved),
        )

    if inner.claim not in outer.assumptions:
        resolved = ", ".join(c.short() for c in outer.assumptions) or "none"
        raise CompositionInvalid(
            f"Outer receipt did not consume inner claim {inner.claim.short()}",
            detail=f"resolved assumptions: {resolved}",
        )


class _JobObserver:
    """Persists the remote suspend points of one job."""

    def __init__(self, manager: "CompositionManager", job: OrchestrationJob):
        self.manager = manager
        self.job = job

    def on_submitted(self, handle: JobHandle) -> None:
        self.job.record_remote_handle(handle)
        self.job.transition(JobState.REMOTE_SUBMITTED)
        self.manager._save(self.job)
        logger.info(f"Job {self.job.job_id}: remote job {handle.job_id} submitted")

    def on_polling(self, handle: JobHandle) -> None:
        if self.job.state is JobState.REMOTE_SUBMITTED:
            self.job.transition(JobState.REMOTE_POLLING)
            self.manager._save(self.job)


# =============================================================================
# Composition Manager
# =============================================================================


class CompositionManager:
    """
    Owns the OrchestrationJob state machine.

    Every transition is persisted through the job store before the next
    suspend point, so `resume` can pick up an in-flight remote job without
    submitting it again.
    """

    def __init__(
        self,
        registry: ProgramRegistry,
        inner_backend: ProvingBackend,
        outer_backend: ProvingBackend,
        submission: Optional[SubmissionPipeline] = None,
        store=None,
        inner_program: str = MOD_EXP,
        outer_program: str = IS_EVEN,
    ):
        """
        Args:
            registry: Program registry snapshot
            inner_backend: Backend for the inner (private) proof
            outer_backend: Backend for the outer (composed) proof
            submission: Submission pipeline; None stops jobs at COMPOSED_READY
            store: Job store (JobStore or MemoryJobStore)
            inner_program: Default inner program name
            outer_program: Default outer program name
        """
        self.registry = registry
        self.inner_backend = inner_backend
        self.outer_backend = outer_backend
        self.submission = submission
        if store is None:
            from zkcompose.core.storage.job_store import MemoryJobStore
            store = MemoryJobStore()
        self.store = store
        self.inner_program = inner_program
        self.outer_program = outer_program

        self._tasks: Dict[str, Tuple[asyncio.Task, OrchestrationJob]] = {}
        self._cancel_requested: Set[str] = set()

    def _save(self, job: OrchestrationJob) -> None:
        self.store.save(job)

    def _fail(self, job: OrchestrationJob, reason: FailureReason, error: ComposeError) -> None:
        job.fail(Failure.from_error(reason, error))
        self._save(job)
        logger.error(f"Job {job.job_id} failed: {job.failure}")

    # =========================================================================
    # Job Lifecycle
    # =========================================================================

    def create_job(
        self,
        private_input: bytes,
        public_input: Optional[bytes] = None,
        inner_program: Optional[str] = None,
        outer_program: Optional[str] = None,
    ) -> OrchestrationJob:
        """
        Create and persist a job.

        Args:
            private_input: Input of the inner program; never leaves this machine
            public_input: Input of the outer program; None uses the inner journal

        Raises:
            UnknownProgram: if either program is not registered
            ValueError: if an input is not bytes or is oversized
        """
        inner_program = inner_program or self.inner_program
        outer_program = outer_program or self.outer_program
        self.registry.resolve(inner_program)
        self.registry.resolve(outer_program)

        ok, err = validate_input(private_input, "private_input")
        if not ok:
            raise ValueError(err)
        if public_input is not None:
            ok, err = validate_input(public_input, "public_input")
            if not ok:
                raise ValueError(err)

        job = OrchestrationJob(
            job_id=new_job_id(),
            inner_program=inner_program,
            outer_program=outer_program,
            private_input=bytes(private_input),
            public_input=bytes(public_input) if public_input is not None else None,
        )
        self._save(job)
        logger.info(f"Job {job.job_id} created ({inner_program} -> {outer_program})")
        return job

    async def run(self, job: OrchestrationJob) -> OrchestrationJob:
        """
        Drive a job to a terminal state (or COMPOSED_READY without a pipeline).

        Cancellation through `cancel()` ends the job FAILED(Cancelled) and
        returns it; any other cancellation of the calling task is recorded
        the same way and then propagated. A job interrupted while submitting
        stays COMPOSED_READY so `resume` can wait for its transaction.
        """
        if job.is_terminal:
            return job
        if job.job_id in self._tasks:
            raise InvalidTransition(f"Job {job.job_id} is already running")

        self._tasks[job.job_id] = (asyncio.current_task(), job)
        try:
            await self._drive(job)
        except asyncio.CancelledError:
            if job.state is JobState.COMPOSED_READY:
                # The worker thread may still broadcast; its hash lands in pending_tx
                logger.warning(f"Job {job.job_id} interrupted during submission; resume it to finish")
            elif not job.is_terminal:
                if job.remote_handle is not None:
                    job.abandon_remote_handle()
                self._fail(job, FailureReason.CANCELLED, Cancelled(f"Cancelled in {job.state.value}"))
            if job.job_id not in self._cancel_requested:
                raise
        finally:
            self._tasks.pop(job.job_id, None)
            self._cancel_requested.discard(job.job_id)

        return job

    async def run_all(self, jobs: Iterable[OrchestrationJob]) -> List[OrchestrationJob]:
        """Run independent jobs concurrently."""
        return list(await asyncio.gather(*(self.run(job) for job in jobs)))

    async def resume(self, job_id: str) -> OrchestrationJob:
        """
        Reload a persisted job and continue it.

        Jobs in a remote state resume polling their stored handle; terminal
        jobs come back unchanged.

        Raises:
            KeyError: if the job is unknown
        """
        job = self.store.load(job_id)
        if job is None:
            raise KeyError(f"Unknown job {job_id}")
        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.state.value}; nothing to resume")
            return job
        logger.info(f"Resuming job {job_id} from {job.state.value}")
        return await self.run(job)

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation of a running job.

        Local proving cannot be interrupted; its result is dropped. Remote
        polling stops and a best-effort cancel is sent to the service.

        Returns False for jobs that are not running or have reached
        COMPOSED_READY: a broadcast transaction cannot be called back.
        """
        entry = self._tasks.get(job_id)
        if entry is None:
            return False
        task, job = entry
        if task.done():
            return False
        if job.state is JobState.COMPOSED_READY or job.is_terminal:
            logger.warning(f"Job {job_id} is {job.state.value}; too late to cancel")
            return False
        self._cancel_requested.add(job_id)
        task.cancel()
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def discard_late_receipt(self, job_id: str, handle_id: str, receipt: Receipt) -> bool:
        """
        Handle a receipt that shows up outside the polling loop.

        Returns True when the receipt is discarded: the job is terminal, the
        handle was abandoned, or it is not the job's remote job. Returns False
        when it belongs to the job's active remote job, which its polling loop
        will collect. The job record is never modified here.
        """
        job = self.store.load(job_id)
        if job is None:
            logger.warning(f"Discarding receipt {receipt.claim.short()} for unknown job {job_id}")
            return True

        if job.is_terminal or handle_id in job.abandoned_handles:
            logger.warning(
                f"Discarding late receipt {receipt.claim.short()} from remote job {handle_id} "
                f"(job {job_id} is {job.state.value})"
            )
            return True

        if job.remote_handle is None or job.remote_handle.job_id != handle_id:
            logger.warning(f"Discarding receipt from unrelated remote job {handle_id} for job {job_id}")
            return True

        return False

    # =========================================================================
    # State Machine
    # =========================================================================

    async def _drive(self, job: OrchestrationJob) -> None:
        inner_image = self.registry.resolve(job.inner_program)
        outer_image = self.registry.resolve(job.outer_program)

        if job.state is JobState.CREATED:
            job.transition(JobState.LOCAL_PROVING)
            self._save(job)

        if job.state is JobState.LOCAL_PROVING:
            if not await self._prove_inner(job, inner_image):
                return

        if job.state in (
            JobState.LOCAL_PROOF_READY,
            JobState.REMOTE_SUBMITTED,
            JobState.REMOTE_POLLING,
        ):
            if not await self._prove_outer(job, outer_image):
                return

        if job.state is JobState.COMPOSED_READY:
            await self._submit(job)

    async def _prove_inner(self, job: OrchestrationJob, inner_image: ProgramImage) -> bool:
        logger.info(f"Job {job.job_id}: proving {inner_image.name} on {self.inner_backend.name} backend")
        request = ProveRequest(image=inner_image, private_input=job.private_input)
        try:
            receipt = await self.inner_backend.produce(request)
        except ComposeError as e:
            self._fail(job, FailureReason.INNER_PROOF_FAILED, e)
            return False
        except Exception as e:
            logger.exception(f"Job {job.job_id}: unexpected error while proving locally")
            self._fail(job, FailureReason.INNER_PROOF_FAILED, ExecutionFault(
                f"Unexpected {type(e).__name__} while proving locally", detail=str(e)
            ))
            return False

        ok, err = validate_receipt(receipt, inner_image.image_id)
        if ok and receipt.unresolved:
            ok, err = False, "inner receipt is conditional"
        if not ok:
            self._fail(job, FailureReason.INNER_PROOF_FAILED, CompositionInvalid(err))
            return False

        job.record_inner_receipt(receipt)
        job.transition(JobState.LOCAL_PROOF_READY)
        self._save(job)
        return True

    async def _prove_outer(self, job: OrchestrationJob, outer_image: ProgramImage) -> bool:
        inner = job.inner_receipt
        assumption = Assumption.from_receipt(inner)
        public_input = job.public_input if job.public_input is not None else inner.journal
        request = ProveRequest(
            image=outer_image,
            public_input=public_input,
            assumptions=(assumption,),
        )
        observer = _JobObserver(self, job)

        try:
            if job.remote_handle is not None:
                resume = getattr(self.outer_backend, "resume", None)
                if resume is None:
                    raise InvalidTransition(
                        f"Job {job.job_id} has remote job {job.remote_handle.job_id} "
                        f"but the {self.outer_backend.name} backend cannot resume it"
                    )
                outer = await resume(job.remote_handle, observer)
            else:
                logger.info(
                    f"Job {job.job_id}: proving {outer_image.name} on {self.outer_backend.name} "
                    f"backend with assumption {assumption.claim.short()}"
                )
                outer = await self.outer_backend.produce(request, observer)
        except CompositionInvalid as e:
            self._fail(job, FailureReason.COMPOSITION_INVALID, e)
            return False
        except ComposeError as e:
            job.abandon_remote_handle()
            self._fail(job, FailureReason.REMOTE_PROOF_FAILED, e)
            return False
        except Exception as e:
            logger.exception(f"Job {job.job_id}: unexpected error while proving remotely")
            job.abandon_remote_handle()
            if not job.is_terminal:
                self._fail(job, FailureReason.REMOTE_PROOF_FAILED, RemoteRejected(
                    f"Unexpected {type(e).__name__} while proving remotely", detail=str(e)
                ))
            return False

        if job.is_terminal:
            logger.warning(f"Job {job.job_id} ended while proving; discarding outer receipt")
            return False

        try:
            validate_composition(inner, outer, outer_image)
        except CompositionInvalid as e:
            self._fail(job, FailureReason.COMPOSITION_INVALID, e)
            return False

        job.record_outer_receipt(outer)
        # Backends without remote suspend points skip straight past them
        while job.state is not JobState.COMPOSED_READY:
            job.transition({
                JobState.LOCAL_PROOF_READY: JobState.REMOTE_SUBMITTED,
                JobState.REMOTE_SUBMITTED: JobState.REMOTE_POLLING,
                JobState.REMOTE_POLLING: JobState.COMPOSED_READY,
            }[job.state])
        self._save(job)
        logger.info(f"Job {job.job_id}: composed receipt ready ({outer.claim.short()})")
        return True

    async def _submit(self, job: OrchestrationJob) -> None:
        if self.submission is None:
            logger.info(f"Job {job.job_id}: no submission pipeline, stopping at composed_ready")
            return

        pending = None
        if job.pending_tx is not None:
            pending = (job.pending_tx["tx_hash"], job.pending_tx["nonce"])

        def on_sent(tx_hash: str, nonce: int) -> None:
            job.record_pending_tx(tx_hash, nonce)
            self._save(job)

        try:
            result = await asyncio.to_thread(
                self.submission.submit,
                job.outer_receipt,
                on_sent=on_sent,
                pending=pending,
            )
        except ComposeError as e:
            self._fail(job, FailureReason.SUBMISSION_FAILED, e)
            return
        except Exception as e:
            logger.exception(f"Job {job.job_id}: unexpected error during submission")
            self._fail(job, FailureReason.SUBMISSION_FAILED, TxRejected(
                f"Unexpected {type(e).__name__} during submission", detail=str(e)
            ))
            return

        job.record_submission(result)
        job.transition(JobState.DONE)
        self._save(job)
        logger.info(f"Job {job.job_id}: done, transaction {result.tx_hash}")

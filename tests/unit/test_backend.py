"""
Unit tests for proving backends.

Tests cover:
1. Polling policy cadence
2. LocalBackend on a worker pool
3. RemoteBackend polling: success, transient errors, failure, timeout
4. Late results and cancellation abandon the handle
5. Service cancels run off the event loop
"""

import asyncio
import itertools
import time

import pytest

from zkcompose.core.errors import RemoteRejected, Timeout, TransientServiceError
from zkcompose.core.prover import (
    DevExecutor,
    DevProvingService,
    LocalBackend,
    LocalProverClient,
    PollingPolicy,
    ProveRequest,
    RemoteBackend,
    RemoteProverClient,
)
from zkcompose.core.receipt import Assumption
from zkcompose.guests import IS_EVEN, MOD_EXP, encode_mod_exp_input

FAST_POLICY = PollingPolicy(initial_interval=0.01, backoff_factor=2.0, max_interval=0.02, timeout=5.0)


@pytest.fixture
def executor(registry):
    return DevExecutor(registry.image_ids())


@pytest.fixture
def inner_receipt(registry, executor):
    return LocalProverClient(executor).prove_local(
        registry.resolve(MOD_EXP), encode_mod_exp_input(7, 2, 3)
    )


@pytest.fixture
def outer_request(registry, inner_receipt):
    return ProveRequest(
        image=registry.resolve(IS_EVEN),
        public_input=inner_receipt.journal,
        assumptions=(Assumption.from_receipt(inner_receipt),),
    )


def make_backend(registry, service, policy=FAST_POLICY, clock=None):
    client = RemoteProverClient(service, registry, sleep=lambda _: None)
    if clock is None:
        return RemoteBackend(client, policy)
    return RemoteBackend(client, policy, clock=clock)


class RecordingObserver:
    def __init__(self):
        self.events = []

    def on_submitted(self, handle):
        self.events.append(("submitted", handle.job_id))

    def on_polling(self, handle):
        self.events.append(("polling", handle.job_id))


class TestPollingPolicy:
    """Tests for the polling cadence."""

    def test_default_cadence(self):
        intervals = PollingPolicy().intervals()
        assert list(itertools.islice(intervals, 6)) == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]

    def test_default_timeout(self):
        assert PollingPolicy().timeout == 1800.0


class TestLocalBackend:
    """Tests for LocalBackend."""

    def test_produce(self, registry, executor):
        backend = LocalBackend(LocalProverClient(executor))
        request = ProveRequest(image=registry.resolve(MOD_EXP), private_input=encode_mod_exp_input(7, 3, 2))

        receipt = asyncio.run(backend.produce(request))

        assert receipt.claim.program_id == registry.resolve(MOD_EXP).image_id


class TestRemoteBackend:
    """Tests for the submit-then-poll driver."""

    def test_produce_waits_for_completion(self, registry, executor, outer_request, inner_receipt):
        service = DevProvingService(registry, executor, complete_after_polls=3)
        observer = RecordingObserver()

        receipt = asyncio.run(make_backend(registry, service).produce(outer_request, observer))

        assert inner_receipt.claim in receipt.assumptions
        assert [kind for kind, _ in observer.events] == ["submitted", "polling"]
        assert service.jobs[observer.events[0][1]]["polls"] == 4

    def test_transient_poll_errors_tolerated(self, registry, executor, outer_request):
        service = DevProvingService(registry, executor, complete_after_polls=0)
        failures = {"left": 2}
        original = service.job_status

        def flaky_status(job_id):
            if failures["left"]:
                failures["left"] -= 1
                raise TransientServiceError("gateway timeout")
            return original(job_id)

        service.job_status = flaky_status

        receipt = asyncio.run(make_backend(registry, service).produce(outer_request))

        assert receipt.digest_matches()
        assert failures["left"] == 0

    def test_failed_job_raises_rejected(self, registry, executor, inner_receipt):
        service = DevProvingService(registry, executor, complete_after_polls=0)
        request = ProveRequest(image=registry.resolve(IS_EVEN), public_input=inner_receipt.journal)

        with pytest.raises(RemoteRejected):
            asyncio.run(make_backend(registry, service).produce(request))

    def test_timeout_abandons_handle(self, registry, executor, outer_request):
        service = DevProvingService(registry, executor, complete_after_polls=10**6)
        policy = PollingPolicy(initial_interval=0.01, backoff_factor=1.0, max_interval=0.01, timeout=0.1)
        backend = make_backend(registry, service, policy=policy)
        observer = RecordingObserver()

        with pytest.raises(Timeout):
            asyncio.run(backend.produce(outer_request, observer))

        job_id = observer.events[0][1]
        assert job_id in backend.abandoned
        assert service.jobs[job_id]["cancelled"]

    def test_result_after_deadline_discarded(self, registry, executor, outer_request):
        """A receipt observed past the deadline is dropped, not returned."""
        service = DevProvingService(registry, executor, complete_after_polls=0)
        ticks = iter([0.0, 0.0])
        clock = lambda: next(ticks, 100.0)
        policy = PollingPolicy(initial_interval=1.0, timeout=10.0)
        backend = make_backend(registry, service, policy=policy, clock=clock)

        with pytest.raises(Timeout):
            asyncio.run(backend.produce(outer_request))

        assert len(backend.abandoned) == 1

    def test_cancellation_abandons_handle(self, registry, executor, outer_request):
        service = DevProvingService(registry, executor, complete_after_polls=10**6)
        backend = make_backend(registry, service)

        async def scenario():
            task = asyncio.create_task(backend.produce(outer_request))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        (job_id,) = service.jobs
        assert job_id in backend.abandoned
        assert service.jobs[job_id]["cancelled"]

    def test_slow_cancel_does_not_stall_loop(self, registry, executor, outer_request):
        """Other coroutines keep running while the service cancel is in flight."""
        class SlowCancelService(DevProvingService):
            def cancel_job(self, job_id):
                time.sleep(0.5)
                super().cancel_job(job_id)

        service = SlowCancelService(registry, executor, complete_after_polls=10**6)
        backend = make_backend(registry, service)
        gaps = []

        async def heartbeat(stop):
            last = time.monotonic()
            while not stop.is_set():
                await asyncio.sleep(0.02)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        async def scenario():
            stop = asyncio.Event()
            beat = asyncio.create_task(heartbeat(stop))
            task = asyncio.create_task(backend.produce(outer_request))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            stop.set()
            await beat

        asyncio.run(scenario())

        assert max(gaps) < 0.3
        (job_id,) = service.jobs
        assert service.jobs[job_id]["cancelled"]

    def test_abandoned_history_is_bounded(self, registry, executor):
        backend = make_backend(registry, DevProvingService(registry, executor))
        assert backend.abandoned.maxlen is not None

    def test_resume_polls_existing_handle(self, registry, executor, outer_request):
        """Resuming polls the stored job and never submits again."""
        service = DevProvingService(registry, executor, complete_after_polls=1)
        client = RemoteProverClient(service, registry)
        handle = client.submit(outer_request.image, outer_request.public_input, outer_request.assumptions)

        backend = RemoteBackend(client, FAST_POLICY)
        receipt = asyncio.run(backend.resume(handle))

        assert receipt.claim.program_id == handle.image_id
        assert len(service.jobs) == 1
        assert client.submissions == 1

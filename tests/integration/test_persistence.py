"""
Integration tests for job persistence across restarts.

A remote proof can take many minutes; a process restart in that window must
resume polling the same remote job instead of paying for a second one. The
same holds for a verifier transaction that was broadcast but not yet mined.
"""

import asyncio

import pytest

from zkcompose.core.composition import CompositionManager, JobState
from zkcompose.core.prover import (
    DevExecutor,
    DevProvingService,
    LocalBackend,
    LocalProverClient,
    PollingPolicy,
    RemoteBackend,
    RemoteProverClient,
)
from zkcompose.core.storage import JobStore
from zkcompose.core.submission import ChainClient, SubmissionPipeline
from zkcompose.guests import decode_is_even_journal, encode_mod_exp_input

FAST_POLICY = PollingPolicy(initial_interval=0.01, backoff_factor=2.0, max_interval=0.02, timeout=30.0)
VERIFIER = "0x" + "ab" * 20


class CrashingStore:
    """
    Persists through a JobStore until a job reaches `crash_state`, then
    drops every later write, as if the process had died right there.
    """

    def __init__(self, inner, crash_state):
        self.inner = inner
        self.crash_state = crash_state
        self.crashed = False

    def save(self, job):
        if self.crashed:
            return
        self.inner.save(job)
        if job.state is self.crash_state:
            self.crashed = True

    def load(self, job_id):
        return self.inner.load(job_id)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "node_data"
    path.mkdir()
    return path


@pytest.fixture
def service(registry):
    # Shared by both "processes"; cancel requests from the dying one are ignored
    return DevProvingService(registry, DevExecutor(registry.image_ids()), complete_after_polls=10**6, honor_cancel=False)


def make_manager(registry, service, store, submission=None):
    remote = RemoteProverClient(service, registry, sleep=lambda _: None)
    manager = CompositionManager(
        registry,
        inner_backend=LocalBackend(LocalProverClient(DevExecutor(registry.image_ids()))),
        outer_backend=RemoteBackend(remote, FAST_POLICY),
        submission=submission,
        store=store,
    )
    return manager, remote


def test_resume_after_restart(registry, service, data_dir):
    """A job persisted mid-polling resumes on its stored handle."""
    # 1. Process A submits the remote job and dies while polling
    store_a = CrashingStore(JobStore(data_dir), JobState.REMOTE_POLLING)
    manager_a, remote_a = make_manager(registry, service, store_a)

    async def crash():
        job = manager_a.create_job(encode_mod_exp_input(7, 3, 2))
        task = asyncio.create_task(manager_a.run(job))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if store_a.crashed:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return job.job_id

    job_id = asyncio.run(crash())
    assert remote_a.submissions == 1

    persisted = JobStore(data_dir).load(job_id)
    assert persisted.state is JobState.REMOTE_POLLING
    assert persisted.remote_handle is not None
    assert persisted.inner_receipt is not None

    # 2. The remote job finishes while nobody is watching
    service.complete_after_polls = 0

    # 3. Process B resumes from disk
    store_b = JobStore(data_dir)
    manager_b, remote_b = make_manager(registry, service, store_b)
    job = asyncio.run(manager_b.resume(job_id))

    assert job.state is JobState.COMPOSED_READY
    assert job.remote_handle.job_id == persisted.remote_handle.job_id
    assert decode_is_even_journal(job.outer_receipt.journal) is False
    assert remote_b.submissions == 0
    assert len(service.jobs) == 1
    assert store_b.load(job_id).state is JobState.COMPOSED_READY


def test_completed_job_survives_restart(registry, data_dir):
    service = DevProvingService(registry, DevExecutor(registry.image_ids()), complete_after_polls=1)
    manager, _ = make_manager(registry, service, JobStore(data_dir))

    job = asyncio.run(manager.run(manager.create_job(encode_mod_exp_input(7, 2, 3))))

    reloaded = JobStore(data_dir).load(job.job_id)
    assert reloaded == job
    assert reloaded.outer_receipt.digest_matches()
    assert JobStore(data_dir).in_flight() == [reloaded]


def test_resume_unknown_job(registry, service, data_dir):
    manager, _ = make_manager(registry, service, JobStore(data_dir))
    with pytest.raises(KeyError):
        asyncio.run(manager.resume("missing"))


def test_resume_terminal_job_is_noop(registry, service, data_dir):
    manager, remote = make_manager(registry, service, JobStore(data_dir))
    failed = asyncio.run(manager.run(manager.create_job(encode_mod_exp_input(0, 1, 1))))

    resumed = asyncio.run(manager.resume(failed.job_id))

    assert resumed == failed
    assert remote.submissions == 0


class SnapshotStore:
    """JobStore wrapper that keeps the pending transaction of every save."""

    def __init__(self, inner):
        self.inner = inner
        self.pending = []

    def save(self, job):
        self.inner.save(job)
        if job.pending_tx is not None:
            self.pending.append(dict(job.pending_tx))

    def load(self, job_id):
        return self.inner.load(job_id)


def test_broadcast_hash_persisted_before_confirmation(registry, data_dir, fake_node, signer):
    service = DevProvingService(registry, DevExecutor(registry.image_ids()), complete_after_polls=1)
    store = SnapshotStore(JobStore(data_dir))
    pipeline = SubmissionPipeline(ChainClient(fake_node, signer, VERIFIER, fake_node.chain_id), sleep=lambda _: None)
    manager, _ = make_manager(registry, service, store, submission=pipeline)

    job = asyncio.run(manager.run(manager.create_job(encode_mod_exp_input(7, 3, 2))))

    assert job.state is JobState.DONE
    assert store.pending == [{"tx_hash": job.submission_result.tx_hash, "nonce": 0}]
    assert JobStore(data_dir).load(job.job_id).pending_tx is None


def test_resume_waits_for_broadcast_transaction(registry, data_dir, fake_node, signer):
    """A transaction sent before a restart is awaited, not sent a second time."""
    service = DevProvingService(registry, DevExecutor(registry.image_ids()), complete_after_polls=1)
    store = JobStore(data_dir)
    manager_a, _ = make_manager(registry, service, store)
    job = asyncio.run(manager_a.run(manager_a.create_job(encode_mod_exp_input(7, 3, 2))))
    assert job.state is JobState.COMPOSED_READY

    # Process A broadcast its transaction and died before it was mined
    tx_hash = "0x" + "77" * 32
    job.record_pending_tx(tx_hash, 0)
    store.save(job)
    fake_node.receipts[tx_hash] = {"status": "0x1", "blockNumber": hex(fake_node.block), "gasUsed": hex(21_000)}

    pipeline = SubmissionPipeline(ChainClient(fake_node, signer, VERIFIER, fake_node.chain_id), sleep=lambda _: None)
    manager_b, _ = make_manager(registry, service, JobStore(data_dir), submission=pipeline)
    resumed = asyncio.run(manager_b.resume(job.job_id))

    assert resumed.state is JobState.DONE
    assert resumed.submission_result.tx_hash == tx_hash
    assert resumed.pending_tx is None
    assert fake_node.send_count() == 0


def test_interrupted_submission_resumes_without_resending(registry, data_dir, fake_node, signer):
    """Cancelling the caller mid-submission leaves the job resumable, not failed."""
    fake_node.send_delay = 0.3
    service = DevProvingService(registry, DevExecutor(registry.image_ids()), complete_after_polls=1)
    pipeline = SubmissionPipeline(ChainClient(fake_node, signer, VERIFIER, fake_node.chain_id), sleep=lambda _: None)
    manager, _ = make_manager(registry, service, JobStore(data_dir), submission=pipeline)

    async def interrupt():
        job = manager.create_job(encode_mod_exp_input(7, 3, 2))
        task = asyncio.create_task(manager.run(job))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if job.state is JobState.COMPOSED_READY:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return job

    # asyncio.run waits for the submission thread before returning
    job = asyncio.run(interrupt())
    assert job.state is JobState.COMPOSED_READY
    assert job.failure is None

    persisted = JobStore(data_dir).load(job.job_id)
    assert persisted.pending_tx is not None

    resumed = asyncio.run(manager.resume(job.job_id))

    assert resumed.state is JobState.DONE
    assert resumed.submission_result.tx_hash == persisted.pending_tx["tx_hash"]
    assert fake_node.send_count() == 1

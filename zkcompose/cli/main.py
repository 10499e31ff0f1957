"""
zkcompose CLI - Command Line Interface for the proof-composition orchestrator

Main entry point for all CLI commands.
"""

import asyncio
import shlex
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import click

from zkcompose import __version__
from zkcompose.utils.logger import setup_logging, get_logger

logger = get_logger("cli")


def build_manager(config, dev: bool = False, submit: bool = True):
    """
    Assemble a CompositionManager from configuration.

    Args:
        config: ComposerConfig
        dev: Use the in-process dev proving service instead of the remote one
        submit: Attach the submission pipeline

    Raises:
        click.ClickException: if the configuration is incomplete
    """
    from zkcompose.core.composition import CompositionManager
    from zkcompose.core.prover import (
        DevExecutor,
        DevProvingService,
        HttpProvingService,
        LocalBackend,
        LocalProverClient,
        RemoteBackend,
        RemoteProverClient,
        SubprocessProver,
    )
    from zkcompose.core.registry import ProgramRegistry, builtin_registry
    from zkcompose.core.storage import JobStore

    problems = config.validate(require_remote=not dev, require_chain=submit)
    if problems:
        raise click.ClickException("Invalid configuration:\n  " + "\n  ".join(problems))

    if config.program_manifest:
        registry = ProgramRegistry.from_manifest(config.program_manifest)
    else:
        registry = builtin_registry()

    dev_capability = DevExecutor(registry.image_ids())
    if config.local_prover_command and not dev:
        local_capability = SubprocessProver(shlex.split(config.local_prover_command))
    else:
        local_capability = dev_capability

    if dev:
        service = DevProvingService(registry, dev_capability)
    else:
        service = HttpProvingService(
            config.remote_url,
            api_key=config.remote_api_key,
            request_timeout=config.remote_request_timeout,
        )

    remote_client = RemoteProverClient(
        service,
        registry,
        submit_retries=config.submit_retries,
        retry_backoff=config.submit_retry_backoff,
        proof_kind=config.proof_kind,
    )
    executor = ThreadPoolExecutor(max_workers=config.local_workers, thread_name_prefix="local-prover")

    return CompositionManager(
        registry,
        inner_backend=LocalBackend(LocalProverClient(local_capability), executor),
        outer_backend=RemoteBackend(remote_client, config.polling_policy()),
        submission=build_pipeline(config) if submit else None,
        store=JobStore(config.data_dir),
        inner_program=config.inner_program,
        outer_program=config.outer_program,
    )


def build_pipeline(config):
    """Submission pipeline bound to the configured signer and verifier."""
    from zkcompose.core.submission import ChainClient, JsonRpcClient, SubmissionPipeline
    from zkcompose.crypto import SignerKey, hex_to_bytes

    chain = ChainClient(
        JsonRpcClient(config.rpc_url),
        SignerKey.from_hex(config.private_key),
        config.contract,
        config.chain_id,
    )
    return SubmissionPipeline(
        chain,
        function_signature=config.function_signature,
        seal_selector=hex_to_bytes(config.seal_selector) if config.seal_selector else b"",
        confirmations=config.confirmations,
        tx_timeout=config.tx_timeout,
        poll_interval=config.tx_poll_interval,
        max_resubmits=config.max_resubmits,
    )


def echo_job(job) -> None:
    """Print a job summary."""
    from zkcompose.guests import IS_EVEN, decode_is_even_journal

    click.echo(f"Job {job.job_id}")
    click.echo(f"  Programs: {job.inner_program} -> {job.outer_program}")
    click.echo(f"  State: {job.status_line()}")
    if job.remote_handle is not None:
        click.echo(f"  Remote job: {job.remote_handle.job_id}")
    if job.inner_receipt is not None:
        click.echo(f"  Inner claim: {job.inner_receipt.claim.short()}")
    if job.outer_receipt is not None:
        click.echo(f"  Outer claim: {job.outer_receipt.claim.short()}")
        if job.outer_program == IS_EVEN:
            click.echo(f"  Result is even: {decode_is_even_journal(job.outer_receipt.journal)}")
    if job.submission_result is not None:
        result = job.submission_result
        click.echo(f"  Transaction: {result.tx_hash} (block {result.block_number}, {result.attempts} attempt(s))")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="JSON config file")
@click.option("--env-file", default=None, type=click.Path(exists=True), help=".env file to load")
@click.option("--data-dir", default=None, help="Data directory (overrides config)")
@click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Also write logs to this file")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, debug, config_path, env_file, data_dir, log_file):
    """zkcompose - Local inner proofs, remote composition, on-chain verification"""
    import logging
    from zkcompose.core.config import load_config

    level = logging.DEBUG if debug else logging.INFO
    setup_logging(level=level, log_file=log_file)

    try:
        config = load_config(config_path, env_file)
    except ValueError as e:
        raise click.ClickException(str(e))
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()
    config.data_dir.mkdir(parents=True, exist_ok=True)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Program Commands
# =============================================================================


@cli.command("programs")
@click.pass_context
def programs(ctx):
    """List registered guest programs"""
    from zkcompose.core.registry import ProgramRegistry, builtin_registry

    config = ctx.obj["config"]
    if config.program_manifest:
        registry = ProgramRegistry.from_manifest(config.program_manifest)
    else:
        registry = builtin_registry()

    click.echo(f"Registered programs ({len(registry)}):")
    for image in registry:
        click.echo(f"  {image.name:<16} {image.image_id_hex}")


# =============================================================================
# Job Commands
# =============================================================================


@cli.command("run")
@click.option("--n", "n", required=True, type=int, help="Modulus")
@click.option("--e", "e", required=True, type=int, help="Exponent")
@click.option("--x", "x", required=True, type=int, help="Base (private)")
@click.option("--dev", is_flag=True, help="Prove with the in-process dev service")
@click.option("--no-submit", is_flag=True, help="Stop once the composed receipt is ready")
@click.pass_context
def run(ctx, n, e, x, dev, no_submit):
    """Prove x^e mod n locally, compose remotely, submit on-chain"""
    from zkcompose.core.composition import JobState
    from zkcompose.guests import encode_mod_exp_input

    config = ctx.obj["config"]
    manager = build_manager(config, dev=dev, submit=not no_submit)

    try:
        private_input = encode_mod_exp_input(n, e, x)
        job = manager.create_job(private_input)
    except ValueError as err:
        raise click.ClickException(str(err))

    click.echo(f"Created job {job.job_id}")
    job = asyncio.run(manager.run(job))
    echo_job(job)

    if job.state is JobState.FAILED:
        sys.exit(1)


@cli.command("status")
@click.argument("job_id")
@click.pass_context
def status(ctx, job_id):
    """Show one job"""
    from zkcompose.core.storage import JobStore

    job = JobStore(ctx.obj["config"].data_dir).load(job_id)
    if job is None:
        raise click.ClickException(f"Unknown job {job_id}")
    echo_job(job)


@cli.command("jobs")
@click.option(
    "--state",
    default=None,
    type=click.Choice([
        "created", "local_proving", "local_proof_ready", "remote_submitted",
        "remote_polling", "composed_ready", "done", "failed",
    ]),
    help="Only jobs in this state",
)
@click.option("--in-flight", is_flag=True, help="Only jobs that still need to be resumed")
@click.pass_context
def jobs(ctx, state, in_flight):
    """List jobs"""
    from zkcompose.core.composition import JobState
    from zkcompose.core.storage import JobStore

    store = JobStore(ctx.obj["config"].data_dir)
    if in_flight:
        found = store.in_flight()
    else:
        found = store.list_jobs(JobState(state) if state else None)
    if not found:
        click.echo("No jobs")
        return

    for job in sorted(found, key=lambda j: j.created_at):
        click.echo(f"  {job.job_id}  {job.inner_program} -> {job.outer_program}  {job.status_line()}")


@cli.command("resume")
@click.argument("job_id")
@click.option("--no-submit", is_flag=True, help="Stop once the composed receipt is ready")
@click.pass_context
def resume(ctx, job_id, no_submit):
    """Resume an in-flight job after a restart"""
    from zkcompose.core.composition import JobState

    manager = build_manager(ctx.obj["config"], submit=not no_submit)
    try:
        job = asyncio.run(manager.resume(job_id))
    except KeyError:
        raise click.ClickException(f"Unknown job {job_id}")
    echo_job(job)

    if job.state is JobState.FAILED:
        sys.exit(1)


@cli.command("archive")
@click.argument("job_id", required=False)
@click.pass_context
def archive(ctx, job_id):
    """Move finished jobs out of the active list"""
    from zkcompose.core.storage import JobStore

    store = JobStore(ctx.obj["config"].data_dir)
    if job_id is None:
        click.echo(f"Archived {store.archive_terminal()} job(s)")
        return

    job = store.load(job_id)
    if job is None:
        raise click.ClickException(f"Unknown job {job_id}")
    if not job.is_terminal:
        raise click.ClickException(f"Job {job_id} is {job.state.value}; only done or failed jobs can be archived")
    if store.archive(job_id):
        click.echo(f"Archived job {job_id}")
    else:
        click.echo(f"Job {job_id} is already archived")


if __name__ == "__main__":
    cli()

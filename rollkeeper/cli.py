"""Command line interface for rollkeeper."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from rollkeeper import RolloutEngine, RolloutWorker, get_journal, get_transport
from rollkeeper.constants import DEFAULT_NAMESPACE, DEFAULT_TOPIC
from rollkeeper.contracts import RolloutRecord, RolloutStatus
from rollkeeper.errors import AlreadyInProgress, ImageReferenceError
from rollkeeper.images import resolve
from rollkeeper.worker import enqueue_rollout

app = typer.Typer(help="CLI for verified container image rollouts")

# Command groups
rollout_app = typer.Typer(help="Commands for submitting and inspecting rollouts")
worker_app = typer.Typer(help="Commands for running rollout workers")
image_app = typer.Typer(help="Commands for image references")

app.add_typer(rollout_app, name="rollout")
app.add_typer(worker_app, name="worker")
app.add_typer(image_app, name="image")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """rollkeeper CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> RolloutEngine:
    return RolloutEngine.from_config()


def _echo_record(record: RolloutRecord) -> None:
    typer.echo(f"Rollout {record.request_id}: {record.status.value}")
    typer.echo(f"  Workload: {record.namespace}/{record.workload_name}")
    if record.container:
        typer.echo(f"  Container: {record.container}")
    typer.echo(f"  Image: {record.previous_image or '?'} -> {record.target_image}")
    typer.echo(f"  Started: {record.started_at}")
    if record.ended_at:
        typer.echo(f"  Ended: {record.ended_at}")
    elif record.owner:
        typer.echo(f"  Driven by: {record.owner} (heartbeat {record.heartbeat_at})")
    if record.reason:
        typer.echo(f"  Reason: {record.reason.value}")
    if record.error:
        typer.echo(f"  Error: {record.error}")


@rollout_app.command("submit")
def rollout_submit(
    workload: str,
    image: str,
    namespace: str = typer.Option(DEFAULT_NAMESPACE, "--namespace", "-n"),
    container: Optional[str] = typer.Option(None, "--container", "-c"),
    request_id: Optional[str] = typer.Option(
        None, "--request-id", help="Idempotency key; re-using it never patches twice"
    ),
) -> None:
    """
    Roll a workload onto a new image and wait for the outcome.

    Patches the workload, polls pod health until it is sustained or the
    deadline passes, and rolls back to the previous image on failure.

    Example:
        rollkeeper rollout submit fe devrahul16/fe:42 --namespace default
        # Output: Rollout 5f0c...: succeeded
    """
    engine = _engine()

    async def _submit() -> RolloutRecord | None:
        await engine.cluster.connect()
        try:
            rid = await engine.submit_rollout(
                workload, namespace, image, request_id=request_id, container=container
            )
            return await engine.get_status(rid)
        finally:
            await engine.cluster.disconnect()

    try:
        record = asyncio.run(_submit())
    except (ImageReferenceError, AlreadyInProgress) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)

    if record is None:
        typer.echo("Rollout not found")
        raise typer.Exit(code=1)
    _echo_record(record)
    if record.status is not RolloutStatus.SUCCEEDED:
        raise typer.Exit(code=1)


@rollout_app.command("status")
def rollout_status(request_id: str) -> None:
    """Show the journal record for a rollout request."""
    journal = get_journal()
    record = asyncio.run(journal.find(request_id))
    if record is None:
        typer.echo("Rollout not found")
        raise typer.Exit(code=1)
    _echo_record(record)


@rollout_app.command("list")
def rollout_list(
    workload: Optional[str] = typer.Option(None, "--workload", "-w"),
    namespace: Optional[str] = typer.Option(None, "--namespace", "-n"),
) -> None:
    """
    List recorded rollouts with their status.

    Example:
        rollkeeper rollout list --namespace default
        # Output: 5f0c...    default/fe    succeeded    devrahul16/fe:42
    """
    journal = get_journal()
    records = asyncio.run(journal.list_records(workload, namespace))
    if not records:
        typer.echo("No rollouts found")
        return
    for r in records:
        typer.echo(
            f"{r.request_id}\t{r.namespace}/{r.workload_name}\t{r.status.value}\t{r.target_image}"
        )


@rollout_app.command("recover")
def rollout_recover() -> None:
    """Resolve rollouts left active by a crashed or restarted process."""
    engine = _engine()

    async def _recover() -> list[RolloutRecord]:
        await engine.cluster.connect()
        try:
            return await engine.recover()
        finally:
            await engine.cluster.disconnect()

    records = asyncio.run(_recover())
    if not records:
        typer.echo("Nothing to recover")
        return
    for r in records:
        reason = f" ({r.reason.value})" if r.reason else ""
        typer.echo(f"{r.request_id}\t{r.status.value}{reason}")


@rollout_app.command("enqueue")
def rollout_enqueue(
    workload: str,
    image: str,
    namespace: str = typer.Option(DEFAULT_NAMESPACE, "--namespace", "-n"),
    container: Optional[str] = typer.Option(None, "--container", "-c"),
    request_id: Optional[str] = typer.Option(None, "--request-id"),
    topic: str = typer.Option(DEFAULT_TOPIC, "--topic"),
) -> None:
    """Publish a rollout request for a worker to execute."""
    transport = get_transport()

    async def _enqueue() -> str:
        await transport.connect()
        try:
            return await enqueue_rollout(
                transport,
                workload,
                image,
                namespace=namespace,
                container=container,
                request_id=request_id,
                topic=topic,
            )
        finally:
            await transport.disconnect()

    try:
        rid = asyncio.run(_enqueue())
    except ImageReferenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    typer.echo(f"Request ID: {rid}")
    typer.echo(f"Start a worker with: rollkeeper worker run --topic {topic}")


@worker_app.command("run")
def worker_run(
    topic: str = typer.Option(DEFAULT_TOPIC, "--topic"),
    lifespan: Optional[float] = typer.Option(
        None, "--lifespan", help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that executes rollout requests from the transport.

    Interrupted rollouts left by a previous worker are recovered first.

    Example:
        rollkeeper worker run --topic rollouts --lifespan 300
    """
    transport = get_transport()
    engine = _engine()
    worker = RolloutWorker(transport, engine, topic=topic)

    async def _run() -> None:
        await engine.cluster.connect()
        await transport.connect()
        try:
            await engine.recover()
            await worker.start(lifespan=lifespan)
        finally:
            await transport.disconnect()
            await engine.cluster.disconnect()

    typer.echo(f"Starting rollout worker on topic: {topic}")
    asyncio.run(_run())


@image_app.command("resolve")
def image_resolve(reference: str) -> None:
    """Validate an image reference and show its parts."""
    try:
        ref = resolve(reference)
    except ImageReferenceError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    typer.echo(f"Registry: {ref.registry}")
    typer.echo(f"Repository: {ref.repository}")
    typer.echo(f"Tag or digest: {ref.tag_or_digest}")
    typer.echo(f"Canonical: {ref.canonical}")
    if ref.mutable:
        typer.secho(
            "Warning: mutable tag; pin by digest to make rollouts reproducible",
            fg=typer.colors.YELLOW,
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

"""
docshare command-line interface.

Operator entry points for the background pipeline: the processing queue,
bulk reprocessing and audience synthesis.
"""
import json
import os
import signal
import threading
from concurrent.futures import wait
from uuid import UUID

import click

from docshare.context import ExecutionContext
from docshare.logging_config import configure_logging
from docshare.models.document import DocumentStatus


def _operator_context() -> ExecutionContext:
    return ExecutionContext(actor=f"cli:{os.environ.get('USER', 'operator')}")


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


class UUIDParam(click.ParamType):
    name = "uuid"

    def convert(self, value, param, ctx):
        if isinstance(value, UUID):
            return value
        try:
            return UUID(value)
        except ValueError:
            self.fail(f"{value!r} is not a valid id", param, ctx)


UUID_TYPE = UUIDParam()


@click.group()
@click.version_option(package_name="docshare", prog_name="docshare")
@click.option("--log-level", default=None, help="Override DOCSHARE_LOG_LEVEL")
def cli(log_level):
    """Document processing and audience synthesis pipeline."""
    configure_logging(log_level)


@cli.command("init-db")
def init_db_command():
    """Create database tables."""
    from docshare.database import init_db

    init_db()
    click.echo("Database initialised")


@cli.command("run-scheduler")
@click.option("--interval", type=float, default=None, help="Seconds between polls")
@click.option("--once", is_flag=True, help="Drain pending documents, then exit")
def run_scheduler(interval, once):
    """Run the document processing queue."""
    from docshare.orchestrators.processing_scheduler import DocumentScheduler
    from docshare.workers.pool import WorkerPool

    ctx = ExecutionContext.system("scheduler")
    with WorkerPool.from_settings() as pool:
        scheduler = DocumentScheduler(pool)
        if once:
            processed = 0
            while True:
                outcomes = scheduler.dispatch_available(ctx)
                if not outcomes:
                    break
                wait(outcomes)
                processed += len(outcomes)
            click.echo(f"Processed {processed} document(s)")
            return

        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        try:
            scheduler.run_forever(stop_event=stop, interval=interval, ctx=ctx)
        except KeyboardInterrupt:
            stop.set()


@cli.command()
@click.option("--project", "project_id", type=UUID_TYPE, default=None, help="Only this project")
@click.option("--document", "document_ids", type=UUID_TYPE, multiple=True, help="Only these documents")
@click.option(
    "--status",
    "statuses",
    type=click.Choice([DocumentStatus.COMPLETED.value, DocumentStatus.FAILED.value]),
    multiple=True,
    help="Only documents currently in this status (default: completed and failed)",
)
def reprocess(project_id, document_ids, statuses):
    """Reset completed/failed documents to pending."""
    from docshare.services.reprocessing_service import REPROCESSABLE_STATUSES, ReprocessingService

    stats = ReprocessingService().reprocess(
        _operator_context(),
        document_ids=list(document_ids) or None,
        project_id=project_id,
        statuses=[DocumentStatus(s) for s in statuses] or REPROCESSABLE_STATUSES,
    )
    _echo_json(stats.to_dict())


@cli.command()
@click.argument("project_id", type=UUID_TYPE)
@click.option("--full", is_flag=True, help="Recompute from every ended conversation")
def synthesize(project_id, full):
    """Generate the next audience synthesis version for a project."""
    from docshare.orchestrators.synthesis_orchestrator import (
        SynthesisGenerationError,
        SynthesisOrchestrator,
        SynthesisOrchestratorError,
    )

    try:
        outcome = SynthesisOrchestrator().regenerate(project_id, _operator_context(), full=full)
    except SynthesisGenerationError as e:
        raise click.ClickException(f"Synthesis generation failed ({e.kind}): {e}")
    except SynthesisOrchestratorError as e:
        raise click.ClickException(str(e))

    _echo_json({
        "status": outcome.status.value,
        "version": outcome.version,
        "reason": outcome.reason,
    })


@cli.group()
def synthesis():
    """Read audience synthesis versions."""


@synthesis.command("show")
@click.argument("project_id", type=UUID_TYPE)
@click.option("--version", "version", type=int, default=None, help="Specific version (default: current)")
def synthesis_show(project_id, version):
    """Print the current or a specific synthesis version."""
    from docshare.orchestrators.synthesis_orchestrator import (
        SynthesisNotFoundError,
        SynthesisOrchestrator,
    )

    orchestrator = SynthesisOrchestrator()
    if version is None:
        payload = orchestrator.get_current(project_id)
        if payload is None:
            raise click.ClickException(f"No synthesis available yet for project {project_id}")
    else:
        try:
            payload = orchestrator.get_version(project_id, version)
        except SynthesisNotFoundError as e:
            raise click.ClickException(str(e))
    _echo_json(payload)


@synthesis.command("versions")
@click.argument("project_id", type=UUID_TYPE)
def synthesis_versions(project_id):
    """List synthesis versions for a project, oldest first."""
    from docshare.orchestrators.synthesis_orchestrator import SynthesisOrchestrator

    _echo_json(SynthesisOrchestrator().list_versions(project_id))


def main():
    cli()


if __name__ == "__main__":
    main()

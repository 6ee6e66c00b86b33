# cli.py
from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

import click
from sqlalchemy.exc import SQLAlchemyError

from replayci.archive import RunArchive
from replayci.errors import DefinitionError
from replayci.loader import load_workflow
from replayci.log import configure_logging
from replayci.model import Run, Workflow
from replayci.scheduler import Scheduler, validate_workflow
from replayci.settings import get_settings, load_secrets, load_variables
from replayci.store import SecretStore
from replayci.ui.console import Console, get_console, set_console

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2


def _load_or_exit(workflow_file: str) -> Workflow:
    console = get_console()
    try:
        return load_workflow(workflow_file)
    except DefinitionError as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_file}",
            details=[str(e)],
            suggestion="Fix the workflow definition and try again:\n  replayci plan <workflow-file>",
        )
        sys.exit(EXIT_DEFINITION)


async def _archive(run: Run, url: str) -> None:
    archive = RunArchive(url)
    try:
        await archive.save(run)
    except SQLAlchemyError as e:
        logger.warning("could not archive run %s: %s", run.run_id, e)
    finally:
        await archive.close()


async def _execute(scheduler: Scheduler, archive_url: Optional[str]) -> Run:
    run = await scheduler.execute()
    if archive_url:
        await _archive(run, archive_url)
    return run


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """replayci: run workflow DAGs locally, in dependency order."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow_file", type=click.Path(dir_okay=False))
@click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Maximum jobs running at once")
@click.option("--event", default="push", show_default=True, help="Trigger event name")
@click.option("--secrets-file", default=None, type=click.Path(dir_okay=False), help="dotenv file with secrets")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Run variable (repeatable)")
@click.option("--step-timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default step timeout in seconds")
@click.option("--workdir", default=None, type=click.Path(file_okay=False), help="Working directory for steps")
@click.option("--archive/--no-archive", default=None, help="Store the finished run in the archive database")
@click.pass_context
def run(ctx, workflow_file, concurrency, event, secrets_file, var_pairs, step_timeout, workdir, archive):
    """Run a workflow once for an event."""
    console = get_console()
    settings = get_settings()
    debug = ctx.obj.get("debug", False)

    workflow = _load_or_exit(workflow_file)

    if not workflow.triggered_by(event):
        console.print_info(f"No jobs triggered: workflow '{workflow.name}' does not run on '{event}'")
        sys.exit(EXIT_OK)

    try:
        secrets = SecretStore(load_secrets(secrets_file, settings))
        variables = load_variables(var_pairs, settings)
    except (OSError, ValueError) as e:
        console.print_error("Invalid run inputs", str(e))
        sys.exit(EXIT_FAILED)

    console.secrets = secrets
    configure_logging("DEBUG" if debug else settings.log_level, secrets)

    try:
        scheduler = Scheduler(
            workflow,
            concurrency=concurrency or settings.concurrency,
            event=event,
            step_timeout=step_timeout or settings.step_timeout,
            secrets=secrets,
            variables=variables,
            workdir=workdir or settings.workdir,
            output_tail=settings.output_tail,
            listeners=[console.handle_event],
        )
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e), details=[f"File: {workflow_file}"])
        sys.exit(EXIT_DEFINITION)

    archive_url = settings.archive_url if (settings.archive_enabled if archive is None else archive) else None
    console.print_debug(f"run id {scheduler.run.run_id}, archive: {archive_url or 'off'}")

    try:
        console.print_run_started(
            workflow=workflow.name,
            event=event,
            job_count=len(workflow.jobs),
            concurrency=scheduler.concurrency,
        )
        result = asyncio.run(_execute(scheduler, archive_url))
        console.print_results(result.statuses(), result.status)

        if not result.succeeded:
            sys.exit(EXIT_FAILED)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


@cli.command()
@click.argument("workflow_file", type=click.Path(dir_okay=False))
def plan(workflow_file):
    """Validate a workflow and print its stages without running it."""
    console = get_console()
    workflow = _load_or_exit(workflow_file)
    try:
        graph = validate_workflow(workflow)
    except DefinitionError as e:
        console.print_error("Invalid workflow", str(e), details=[f"File: {workflow_file}"])
        sys.exit(EXIT_DEFINITION)

    console.print_header(f"{workflow.name} (on: {', '.join(workflow.on)})")
    console.print_plan(graph.levels())


@cli.command()
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1), help="Number of runs to show")
def history(limit):
    """List archived runs, newest first."""
    console = get_console()
    settings = get_settings()

    async def _list():
        archive = RunArchive(settings.archive_url)
        try:
            return await archive.list_runs(limit)
        finally:
            await archive.close()

    try:
        runs = asyncio.run(_list())
    except SQLAlchemyError as e:
        console.print_error(
            "Archive unavailable",
            f"Could not read runs from {settings.archive_url}",
            details=[str(e)],
        )
        sys.exit(EXIT_FAILED)
    console.print_runs(runs)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Start the HTTP API for triggering and inspecting runs."""
    import uvicorn

    settings = get_settings()
    configure_logging("DEBUG" if ctx.obj.get("debug", False) else settings.log_level)
    uvicorn.run("replayci.server:app", host=host, port=port)


if __name__ == "__main__":
    cli()

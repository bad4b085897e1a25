"""Command line interface for operating the dealflow engine."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from pydantic import ValidationError

from .config import load_config
from .contracts import SweepSummary, Workflow
from .engine import AutomationEngine
from .exceptions import DealflowError
from .persistence import get_repository

app = typer.Typer(help="CLI for dealflow workflow automation")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
run_app = typer.Typer(help="Commands for inspecting workflow runs")
scheduled_app = typer.Typer(help="Commands for inspecting scheduled actions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(run_app, name="run")
app.add_typer(scheduled_app, name="scheduled")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for engine output"),
) -> None:
    """dealflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_data(data: Optional[str]) -> Dict[str, Any]:
    if not data:
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON for --data: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(parsed, dict):
        typer.secho("--data must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return parsed


def _engine() -> AutomationEngine:
    return AutomationEngine.from_config(load_config(), repository=get_repository())


def _print_summary(summary: SweepSummary) -> None:
    typer.echo(
        f"Processed {summary.processed}: "
        f"{summary.successful} succeeded, {summary.failed} failed"
    )
    for result in summary.results:
        state = "OK" if result.success else "FAILED"
        typer.echo(f"- {result.action_id} ({result.type.value}): {state} {result.message}")


@app.command("sweep")
def sweep(
    loop: bool = typer.Option(False, "--loop", help="Keep sweeping on an interval"),
    interval: Optional[float] = typer.Option(
        None, help="Seconds between sweeps in --loop mode (default from config)"
    ),
) -> None:
    """
    Execute scheduled actions that have come due.

    Claims up to the configured batch size of due actions, dispatches them and
    records their results on the owning workflow runs.

    Example:
        dealflow sweep
        dealflow sweep --loop --interval 30
    """

    async def _run() -> Optional[SweepSummary]:
        async with _engine() as engine:
            if loop:
                stop = asyncio.Event()
                with contextlib.suppress(NotImplementedError):
                    asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, stop.set)
                await engine.sweeper.run_forever(interval, stop)
                return None
            return await engine.sweep()

    try:
        summary = asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Sweeper stopped")
        return
    if summary is not None:
        _print_summary(summary)


@app.command("trigger")
def trigger(
    workflow_id: str,
    data: Optional[str] = typer.Option(None, help="Trigger data as a JSON object"),
) -> None:
    """
    Run a workflow from the catalog immediately.

    Example:
        dealflow trigger wf-welcome --data '{"dealId": "d-1", "companyName": "Acme"}'
    """
    trigger_data = _parse_data(data)

    async def _run() -> tuple[str, Any]:
        async with _engine() as engine:
            run_id = await engine.trigger(workflow_id, trigger_data)
            return run_id, await engine.repository.status(run_id)

    try:
        run_id, status = asyncio.run(_run())
    except DealflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Run {run_id}: {status.value if status else 'unknown'}")


@app.command("event")
def event(
    trigger_type: str,
    data: Optional[str] = typer.Option(None, help="Event payload as a JSON object"),
) -> None:
    """
    Run every active workflow whose trigger matches an event.

    Example:
        dealflow event deal_stage_change --data '{"fromStage": "lead", "toStage": "qualified"}'
    """
    payload = _parse_data(data)

    async def _run() -> List[str]:
        async with _engine() as engine:
            return await engine.handle_event(trigger_type, payload)

    run_ids = asyncio.run(_run())
    typer.echo(f"Started {len(run_ids)} run(s)")
    for run_id in run_ids:
        typer.echo(run_id)


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """
    Load workflow definitions from a YAML or JSON file into the catalog.

    The file may hold a single workflow mapping or a list of them.
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    raw = yaml.safe_load(path.read_text()) or []
    items = raw if isinstance(raw, list) else [raw]
    try:
        workflows = [Workflow.model_validate(item) for item in items]
    except ValidationError as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()

    async def _save() -> None:
        for wf in workflows:
            await repo.save_workflow(wf)

    asyncio.run(_save())
    for wf in workflows:
        typer.echo(f"Imported {wf.id} ({len(wf.actions)} actions)")


@workflow_app.command("list")
def workflow_list() -> None:
    """List workflows in the catalog."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "active" if wf.is_active else "inactive"
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.trigger_type.value}\t{state}")


@run_app.command("list")
def run_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only runs of this workflow"),
) -> None:
    """List workflow runs with their stored status."""
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(workflow_id))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a workflow run and its action results.

    Example:
        dealflow run show 3f1c...
        # Output: Run 3f1c...: partial
        #         Workflow: wf-welcome (trigger: deal_stage_change)
        #         - a1 (send_email): OK Email sent to ops@example.com
        #         - a2 (webhook): FAILED No webhook URL configured
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.workflow_id} (trigger: {run.trigger_type})")
    if run.trigger_data:
        typer.echo(f"Trigger data: {json.dumps(run.trigger_data, default=str)}")
    typer.echo(f"Started: {run.started_at.isoformat()}")
    if run.completed_at:
        typer.echo(f"Completed: {run.completed_at.isoformat()}")
    for result in run.results:
        state = "OK" if result.success else "FAILED"
        typer.echo(f"- {result.action_id} ({result.type.value}): {state} {result.message}")


@scheduled_app.command("list")
def scheduled_list(
    status: Optional[str] = typer.Option(
        None, help="Filter by status (pending, running, completed, failed)"
    ),
) -> None:
    """List scheduled actions."""
    repo = get_repository()
    entries = asyncio.run(repo.list_scheduled_actions(status=status))
    if not entries:
        typer.echo("No scheduled actions found")
        return
    for entry in entries:
        typer.echo(
            f"{entry.id}\t{entry.workflow_run_id}\t{entry.action.id}\t"
            f"{entry.status.value}\t{entry.scheduled_for.isoformat()}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()

"""CLI entry point for the conductor orchestration core."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
import structlog

from conductor.config.settings import ConductorSettings
from conductor.decisions.gate import DecisionGate
from conductor.engine.state_machine import WORKFLOW_PREFIX, load_workflow_state
from conductor.engine.state_store import StateStore
from conductor.exceptions import ConductorError, ConfigurationError
from conductor.factory import create_gate, create_store, create_worktrees
from conductor.graph.plan_file import load_plan
from conductor.models.decisions import Escalation, EscalationStatus
from conductor.models.domain import WorkflowPhase
from conductor.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


def _gate(settings: ConductorSettings, store: StateStore) -> DecisionGate:
    return create_gate(settings, store, use_reasoner=False)


def _run(coro: Any, event: str) -> Any:
    """Run a coroutine for a command, turning conductor errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except ConductorError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(event, exc_info=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        log.debug(event, exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


def _echo_escalation_line(escalation: Escalation) -> None:
    click.echo(
        f"{escalation.id}  {escalation.status.value:<9}  {escalation.owner_workflow_id}  "
        f"step {escalation.step}  conf {escalation.confidence:.2f}  {escalation.question}"
    )


@click.group()
@click.option(
    "--config",
    default="conductor.yaml",
    help="Path to configuration file (defaults apply when it does not exist)",
)
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """conductor: dependency-ordered workflow orchestration."""
    configure_logging(log_level)

    config_path = Path(config)
    try:
        settings = ConductorSettings.from_yaml(config_path) if config_path.exists() else ConductorSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
@click.option("--name", help="Persist the export under plans/<name> in the state store")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the export to a file instead of stdout")
@click.pass_context
def graph(ctx: click.Context, plan_file: str, name: str | None, output: str | None) -> None:
    """Analyze a plan file and print its dependency graph export."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _graph() -> str:
        store = create_store(settings)
        await store.cleanup_stale_temp_files()
        dependency_graph = load_plan(plan_file).build_graph()

        statuses: dict[str, WorkflowPhase] = {}
        for unit in dependency_graph.units:
            state = await load_workflow_state(store, unit.id)
            if state is not None:
                statuses[unit.id] = state.current_state

        export = dependency_graph.export(statuses, bottleneck_threshold=settings.scheduler.bottleneck_threshold)
        if name:
            await store.persist(f"plans/{name}", export.to_dict())
        return export.to_json()

    rendered = _run(_graph(), "graph_error")
    if output:
        Path(output).write_text(rendered + "\n", encoding="utf-8")
        click.echo(f"Graph export written to {output}")
    else:
        click.echo(rendered)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show workflow states, active worktrees and pending escalations."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _status() -> None:
        store = create_store(settings)
        await store.cleanup_stale_temp_files()

        keys = await store.list_keys(WORKFLOW_PREFIX)
        click.echo(f"Workflows ({len(keys)}):")
        for key in keys:
            state = await load_workflow_state(store, key[len(WORKFLOW_PREFIX) :])
            if state is not None:
                click.echo(f"  {state.id:<20} {state.current_state.value:<12} step {state.step_pointer}")

        worktrees = create_worktrees(settings, store)
        active = await worktrees.list_active()
        click.echo(f"Active worktrees ({len(active)}):")
        for worktree in active:
            click.echo(f"  {worktree.unit_id:<20} {worktree.branch:<24} {worktree.path}")

        pending = await _gate(settings, store).list_escalations(status=EscalationStatus.PENDING)
        click.echo(f"Pending escalations ({len(pending)}):")
        for escalation in pending:
            click.echo("  ", nl=False)
            _echo_escalation_line(escalation)

    _run(_status(), "status_error")


@cli.group()
def escalations() -> None:
    """Inspect and settle escalations."""


@escalations.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in EscalationStatus]),
    help="Only show escalations with this status",
)
@click.option("--workflow", help="Only show escalations owned by this workflow")
@click.pass_context
def list_escalations(ctx: click.Context, status_filter: str | None, workflow: str | None) -> None:
    """List escalations in creation order."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _list() -> list[Escalation]:
        store = create_store(settings)
        return await _gate(settings, store).list_escalations(
            status=EscalationStatus(status_filter) if status_filter else None,
            owner_workflow_id=workflow,
        )

    found = _run(_list(), "escalations_list_error")
    if not found:
        click.echo("No escalations found")
        return
    for escalation in found:
        _echo_escalation_line(escalation)


@escalations.command("show")
@click.argument("escalation_id")
@click.pass_context
def show_escalation(ctx: click.Context, escalation_id: str) -> None:
    """Show one escalation as JSON."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _show() -> Escalation:
        store = create_store(settings)
        return await _gate(settings, store).queue.get(escalation_id)

    escalation = _run(_show(), "escalations_show_error")
    click.echo(escalation.model_dump_json(indent=2))


@escalations.command("resolve")
@click.argument("escalation_id")
@click.argument("response")
@click.option("--json", "as_json", is_flag=True, help="Parse RESPONSE as JSON")
@click.pass_context
def resolve_escalation(ctx: click.Context, escalation_id: str, response: str, as_json: bool) -> None:
    """Answer a pending escalation."""
    settings: ConductorSettings = ctx.obj["settings"]

    if as_json:
        try:
            answer: Any = json.loads(response)
        except json.JSONDecodeError as e:
            click.echo(f"Error: RESPONSE is not valid JSON: {e}", err=True)
            sys.exit(1)
    else:
        answer = response

    async def _resolve() -> Escalation:
        store = create_store(settings)
        return await _gate(settings, store).resolve(escalation_id, answer)

    resolved = _run(_resolve(), "escalations_resolve_error")
    click.echo(f"Resolved {resolved.id} for workflow {resolved.owner_workflow_id}")


@escalations.command("cancel")
@click.argument("escalation_id")
@click.pass_context
def cancel_escalation(ctx: click.Context, escalation_id: str) -> None:
    """Cancel a pending escalation. The owning lane is abandoned."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _cancel() -> Escalation:
        store = create_store(settings)
        return await _gate(settings, store).cancel(escalation_id)

    cancelled = _run(_cancel(), "escalations_cancel_error")
    click.echo(f"Cancelled {cancelled.id} for workflow {cancelled.owner_workflow_id}")


@escalations.command("metrics")
@click.pass_context
def escalation_metrics(ctx: click.Context) -> None:
    """Print escalation metrics as JSON."""
    settings: ConductorSettings = ctx.obj["settings"]

    async def _metrics() -> Any:
        store = create_store(settings)
        return await _gate(settings, store).metrics()

    metrics = _run(_metrics(), "escalations_metrics_error")
    click.echo(metrics.model_dump_json(indent=2))


if __name__ == "__main__":
    cli()

"""Operator command line interface for modweave."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .config import load_config
from .errors import ModweaveError
from .migrations import RunStatus
from .orchestrator import Orchestrator
from .workflow import InstanceStatus

T = TypeVar("T")

app = typer.Typer(help="Operator CLI for the modweave orchestration layer")

modules_app = typer.Typer(help="Inspect registered modules")
messages_app = typer.Typer(help="Inspect bus messages")
migrations_app = typer.Typer(help="Inspect migration runs")
workflows_app = typer.Typer(help="Inspect workflow instances")

app.add_typer(modules_app, name="modules")
app.add_typer(messages_app, name="messages")
app.add_typer(migrations_app, name="migrations")
app.add_typer(workflows_app, name="workflows")

_state: dict[str, Any] = {}


@app.callback()
def main(
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
) -> None:
    """modweave CLI entry point."""
    loaded = load_config(config)
    logging.basicConfig(level=loaded.log_level.upper())
    _state["config"] = loaded


def _run(action: Callable[[Orchestrator], Awaitable[T]]) -> T:
    """Open the configured store, run ``action`` against it and close it again."""

    async def runner() -> T:
        orchestrator = Orchestrator.from_config(_state.get("config"))
        await orchestrator.store.connect()
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.store.close()

    try:
        return asyncio.run(runner())
    except ModweaveError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)


@modules_app.command("list")
def modules_list() -> None:
    """List registered modules with version, status and dependencies."""
    modules = _run(lambda o: o.registry.list_modules())
    if not modules:
        typer.echo("No modules registered")
        return
    for module in modules:
        deps = ", ".join(module.dependency_names) or "-"
        typer.echo(f"{module.name}\t{module.version}\t{module.status.value}\t{deps}")


@messages_app.command("dead-letters")
def messages_dead_letters() -> None:
    """
    List dead-lettered messages.

    Dead letters exhausted their retry budget against an unavailable module
    and are never redelivered automatically.

    Example:
        modweave messages dead-letters
        # Output: msg-1f2e...    Billing->Permits    invoice_paid    attempts=5    timeout
    """
    messages = _run(lambda o: o.bus.dead_letters())
    if not messages:
        typer.echo("No dead-lettered messages")
        return
    for message in messages:
        typer.echo(
            f"{message.message_id}\t{message.ordering_key}\t{message.message_type}"
            f"\tattempts={message.attempts}\t{message.last_error or ''}"
        )


@messages_app.command("failed")
def messages_failed() -> None:
    """List messages whose handler rejected them permanently."""
    messages = _run(lambda o: o.bus.failed_messages())
    if not messages:
        typer.echo("No failed messages")
        return
    for message in messages:
        typer.echo(
            f"{message.message_id}\t{message.ordering_key}\t{message.message_type}"
            f"\t{message.last_error or ''}"
        )


@migrations_app.command("runs")
def migrations_runs(
    status: Optional[RunStatus] = typer.Option(None, help="Only show runs with this status"),
) -> None:
    """List migration runs, optionally filtered by status."""
    runs = _run(lambda o: o.migrations.list_runs(status))
    if not runs:
        typer.echo("No migration runs found")
        return
    for run in runs:
        line = f"{run.id}\t{run.module_name}\t{run.from_version} -> {run.to_version}\t{run.status.value}"
        if run.failed_unit:
            line += f"\tfailed at {run.failed_unit}"
        typer.echo(line)


@workflows_app.command("list")
def workflows_list(
    status: Optional[InstanceStatus] = typer.Option(None, help="Only show instances with this status"),
) -> None:
    """List workflow instances with their current step."""
    instances = _run(lambda o: o.workflows.list_instances(status=status))
    if not instances:
        typer.echo("No workflow instances found")
        return
    for instance in instances:
        flag = "\toverdue" if instance.overdue else ""
        typer.echo(
            f"{instance.id}\t{instance.template_id}\t{instance.current_step}\t{instance.status.value}{flag}"
        )


@workflows_app.command("show")
def workflows_show(instance_id: str) -> None:
    """
    Show one workflow instance and its step history.

    Example:
        modweave workflows show wf-3c1d...
        # Output: Instance wf-3c1d... (permit_application_process): active at payment_completed
        #         - application_submitted: valid (2026-01-01 10:00 -> 2026-01-01 10:01)
    """
    instance = _run(lambda o: o.workflows.get_instance(instance_id))
    typer.echo(
        f"Instance {instance.id} ({instance.template_id}): "
        f"{instance.status.value} at {instance.current_step}"
    )
    if instance.data:
        typer.echo(f"Data: {json.dumps(instance.data, default=str)}")
    if instance.cancel_reason:
        typer.echo(f"Cancelled: {instance.cancel_reason}")
    if instance.last_error:
        typer.echo(f"Last error: {instance.last_error}")
    for entry in instance.history:
        typer.echo(
            f"- {entry.step_id}: {entry.outcome or '...'} "
            f"({entry.entered_at} -> {entry.exited_at or ''})"
        )
    for transition in _run(lambda o: o.workflows.available_transitions(instance_id)):
        typer.echo(f"Next: {transition.outcome or '(complete)'} -> {transition.target}")


@workflows_app.command("stats")
def workflows_stats(
    template: Optional[str] = typer.Option(None, help="Only count instances of this template"),
) -> None:
    """Count workflow instances per template, by status and by active step."""
    stats = _run(lambda o: o.workflows.workflow_statistics(template))
    if not stats:
        typer.echo("No workflow templates found")
        return
    for entry in stats.values():
        statuses = ", ".join(f"{status}={count}" for status, count in sorted(entry.by_status.items()))
        typer.echo(f"{entry.template_id}\ttotal={entry.total}\t{statuses}")
        for step, count in sorted(entry.by_step.items()):
            typer.echo(f"  {step}: {count}")


@app.command("report")
def report() -> None:
    """Summarise everything that needs operator attention."""
    summary = _run(lambda o: o.operator_report())
    if summary.clean:
        typer.echo("Nothing needs attention")
        return
    typer.echo(f"Dead letters: {len(summary.dead_letters)}")
    typer.echo(f"Failed messages: {len(summary.failed_messages)}")
    typer.echo(f"Failed migrations: {len(summary.failed_migrations)}")
    typer.echo(f"Overdue instances: {len(summary.overdue_instances)}")
    for module in summary.modules_needing_intervention:
        typer.echo(f"Needs intervention: {module.name} ({module.status_reason})")


if __name__ == "__main__":
    app()

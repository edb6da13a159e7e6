"""CLI entrypoint for exec-agent."""

import json
import logging
from pathlib import Path
from typing import Any

import rich_click as click

from exec_agent import __version__
from exec_agent.agent.models import ExecutionStatus, ScheduleType, TaskType
from exec_agent.controllers import (
    AddScheduleCommand,
    AddTaskCommand,
    AgentCliController,
    EnqueueCommand,
    InspectWorkItemCommand,
    ListWorkItemsCommand,
    RegisterDestinationCommand,
    RunAgentCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _json_object(ctx: click.Context, param: click.Parameter, value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"invalid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise click.BadParameter("expected a JSON object")
    return parsed


def _json_list(ctx: click.Context, param: click.Parameter, value: str | None) -> list[Any]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise click.BadParameter(f"invalid JSON: {error}") from error
    if not isinstance(parsed, list):
        raise click.BadParameter("expected a JSON array")
    return parsed


@click.group()
@click.version_option(version=__version__, prog_name="exec-agent")
def exec_agent() -> None:
    """Execution agent that claims and runs queued work items."""


@exec_agent.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Poll once, run whatever was claimed, then exit.",
)
@click.option(
    "--max-concurrent",
    "max_concurrent_items",
    type=click.IntRange(min=0),
    default=None,
    help="Cap on concurrently executing work items (0 = unlimited).",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def run(db_path: Path | None, once: bool, max_concurrent_items: int | None, verbose: bool) -> None:
    """Start the agent: detect, claim and execute work items until stopped."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    try:
        lines = CONTROLLER.run_agent(
            RunAgentCommand(
                db_path=db_path,
                once=once,
                max_concurrent_items=max_concurrent_items,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@exec_agent.command("init-db")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def init_db(db_path: Path | None) -> None:
    """Apply schema migrations to the local database."""

    _emit_lines(CONTROLLER.init_db(db_path))


@exec_agent.group()
def destination() -> None:
    """Destination registry commands."""


@destination.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--destination-id", default=None, help="Defaults to EXEC_AGENT_DESTINATION_ID.")
@click.option("--organization-id", default=None, help="Defaults to EXEC_AGENT_ORGANIZATION_ID.")
@click.option("--name", default=None, help="Display name, defaults to the hostname.")
def destination_register(
    db_path: Path | None,
    destination_id: str | None,
    organization_id: str | None,
    name: str | None,
) -> None:
    """Create or refresh this destination in the local database."""

    _emit_lines(
        CONTROLLER.register_destination(
            RegisterDestinationCommand(
                db_path=db_path,
                destination_id=destination_id,
                organization_id=organization_id,
                name=name,
            ),
        ),
    )


@exec_agent.group()
def task() -> None:
    """Task definition commands."""


@task.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Task name.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([item.value for item in TaskType]),
    default=TaskType.SINGLE.value,
    show_default=True,
    help="Task type.",
)
@click.option("--task-id", default=None, help="Explicit task id (generated when omitted).")
@click.option("--organization-id", default=None, help="Defaults to EXEC_AGENT_ORGANIZATION_ID.")
@click.option("--config", "configuration", callback=_json_object, help="Configuration JSON object.")
@click.option("--workflow", callback=_json_list, help="Workflow steps as a JSON array.")
def task_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    task_type: str,
    task_id: str | None,
    organization_id: str | None,
    configuration: dict[str, Any],
    workflow: list[dict[str, Any]],
) -> None:
    """Register a task definition.

    Example: `exec-agent task add --name hello --config '{"command": "echo hi"}'`
    """

    _emit_lines(
        CONTROLLER.add_task(
            AddTaskCommand(
                db_path=db_path,
                name=name,
                task_type=task_type,
                organization_id=organization_id,
                task_id=task_id,
                configuration=configuration,
                workflow=workflow,
            ),
        ),
    )


@exec_agent.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task to run.")
@click.option("--destination-id", default=None, help="Assign to one destination.")
@click.option("--input", "input_params", callback=_json_object, help="Input parameters JSON object.")
def enqueue(
    db_path: Path | None,
    task_id: str,
    destination_id: str | None,
    input_params: dict[str, Any],
) -> None:
    """Queue a pending work item for a task."""

    _emit_lines(
        CONTROLLER.enqueue(
            EnqueueCommand(
                db_path=db_path,
                task_id=task_id,
                destination_id=destination_id,
                input_params=input_params,
            ),
        ),
    )


@exec_agent.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in ExecutionStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max rows to show.",
)
def list_items(db_path: Path | None, status: str | None, limit: int) -> None:
    """List work items ordered by queue time."""

    _emit_lines(
        CONTROLLER.list_work_items(
            ListWorkItemsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@exec_agent.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("item_id")
def inspect(db_path: Path | None, item_id: str) -> None:
    """Show one work item with its event history and output."""

    _emit_lines(
        CONTROLLER.inspect_work_item(InspectWorkItemCommand(db_path=db_path, item_id=item_id)),
    )


@exec_agent.group()
def schedule() -> None:
    """Schedule commands."""


@schedule.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task to schedule.")
@click.option(
    "--type",
    "schedule_type",
    type=click.Choice([item.value for item in ScheduleType]),
    default=ScheduleType.INTERVAL.value,
    show_default=True,
    help="Schedule type.",
)
@click.option("--interval-seconds", type=click.IntRange(min=1), default=None, help="Interval length.")
@click.option("--cron", "cron_expression", default=None, help="Cron expression (stored as-is).")
@click.option(
    "--start-in",
    "start_in_seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Seconds until the first run.",
)
@click.option("--input", "input_params", callback=_json_object, help="Input parameters JSON object.")
def schedule_add(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    schedule_type: str,
    interval_seconds: int | None,
    cron_expression: str | None,
    start_in_seconds: int,
    input_params: dict[str, Any],
) -> None:
    """Create a schedule that materialises work items for a task."""

    _emit_lines(
        CONTROLLER.add_schedule(
            AddScheduleCommand(
                db_path=db_path,
                task_id=task_id,
                schedule_type=schedule_type,
                interval_seconds=interval_seconds,
                cron_expression=cron_expression,
                start_in_seconds=start_in_seconds,
                input_params=input_params,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    exec_agent()

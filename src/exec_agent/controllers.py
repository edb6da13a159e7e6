"""Controllers for exec-agent CLI commands."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from exec_agent.agent.models import ExecutionStatus, ScheduleType, WorkItemCreate
from exec_agent.agent.service import AgentRunSummary, AgentService
from exec_agent.config import Settings
from exec_agent.gateway.base import BackendGateway, WorkItemQuery
from exec_agent.gateway.factory import build_gateway
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.common import utc_now
from exec_agent.storage.repository import ExecutionRepository, ScheduleCreate, TaskCreate


@dataclass(slots=True)
class RunAgentCommand:
    """CLI input for the agent loop."""

    db_path: Path | None
    once: bool = False
    max_concurrent_items: int | None = None


@dataclass(slots=True)
class RegisterDestinationCommand:
    db_path: Path | None
    destination_id: str | None = None
    organization_id: str | None = None
    name: str | None = None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for registering a task definition."""

    db_path: Path | None
    name: str
    task_type: str
    organization_id: str | None = None
    task_id: str | None = None
    configuration: dict[str, Any] = field(default_factory=dict)
    workflow: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class EnqueueCommand:
    db_path: Path | None
    task_id: str
    destination_id: str | None = None
    input_params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ListWorkItemsCommand:
    db_path: Path | None
    status: str | None = None
    limit: int = 20


@dataclass(slots=True)
class InspectWorkItemCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class AddScheduleCommand:
    db_path: Path | None
    task_id: str
    schedule_type: str
    interval_seconds: int | None = None
    cron_expression: str | None = None
    start_in_seconds: int = 0
    input_params: dict[str, Any] = field(default_factory=dict)


class AgentCliController:
    """Command handlers returning output lines for the CLI."""

    def run_agent(self, command: RunAgentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrent_items is not None:
            settings.execution.max_concurrent_items = command.max_concurrent_items
        settings.validate()
        summary = asyncio.run(_run_agent(settings, once=command.once))
        return [
            f"Agent summary: claimed={summary.claimed} "
            f"completed={summary.completed} failed={summary.failed}",
        ]

    def init_db(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with _repository(settings):
            pass
        return [f"Schema ready: {settings.db_path}"]

    def register_destination(self, command: RegisterDestinationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            record = repository.register_destination(
                destination_id=command.destination_id or settings.destination.destination_id,
                organization_id=command.organization_id or settings.destination.organization_id,
                name=command.name or settings.destination.name,
                hostname=socket.gethostname(),
            )
        return [
            f"Destination registered: {record.destination_id} "
            f"organization={record.organization_id} name={record.name}",
        ]

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create_task(
                TaskCreate(
                    name=command.name,
                    task_type=command.task_type,
                    organization_id=command.organization_id or settings.destination.organization_id,
                    task_id=command.task_id,
                    configuration=command.configuration,
                    workflow=command.workflow,
                ),
            )
        return [f"Task created: {task.task_id} type={task.task_type} name={task.name}"]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                item = repository.insert_work_item(
                    WorkItemCreate(
                        task_id=command.task_id,
                        destination_id=command.destination_id,
                        input_params=command.input_params,
                    ),
                )
            except LookupError as error:
                return [str(error)]
        return [
            f"Work item queued: {item.item_id} task={item.task_id} "
            f"destination={item.destination_id or '-'}",
        ]

    def list_work_items(self, command: ListWorkItemsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = ExecutionStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            items = repository.list_work_items(
                WorkItemQuery(status=status, unclaimed_only=False, limit=command.limit),
            )
        lines = [f"Work items: {len(items)}"]
        for item in items:
            queued = item.queued_at.isoformat() if item.queued_at is not None else "-"
            lines.append(
                f"  {item.item_id} task={item.task_id} status={item.status.value} "
                f"destination={item.destination_id or '-'} queued_at={queued}",
            )
        return lines

    def inspect_work_item(self, command: InspectWorkItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            item = repository.get_work_item(command.item_id)
            events = repository.list_events(command.item_id) if item is not None else []
        if item is None:
            return [f"Work item not found: {command.item_id}"]

        lines = [
            f"Work item: {item.item_id}",
            f"Task: {item.task_id}",
            f"Status: {item.status.value}",
            f"Destination: {item.destination_id or '-'}",
            f"Trigger: {item.trigger} ({item.trigger_source or '-'})",
            f"Duration ms: {item.duration_ms if item.duration_ms is not None else '-'}",
            f"Error: {item.error_message or '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        if item.output_result is not None:
            lines.append("Output:")
            lines.extend(
                f"  {line}" for line in json.dumps(item.output_result, indent=2).splitlines()
            )
        return lines

    def add_schedule(self, command: AddScheduleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        schedule_type = ScheduleType(command.schedule_type)
        if schedule_type is ScheduleType.INTERVAL and not command.interval_seconds:
            return ["Interval schedules require --interval-seconds."]
        with _repository(settings) as repository:
            try:
                schedule = repository.create_schedule(
                    ScheduleCreate(
                        task_id=command.task_id,
                        schedule_type=schedule_type.value,
                        interval_seconds=command.interval_seconds,
                        cron_expression=command.cron_expression,
                        next_run_at=utc_now() + timedelta(seconds=command.start_in_seconds),
                        input_params=command.input_params,
                    ),
                )
            except LookupError as error:
                return [str(error)]
        next_run = schedule.next_run_at.isoformat() if schedule.next_run_at is not None else "-"
        return [
            f"Schedule created: {schedule.schedule_id} type={schedule.schedule_type} "
            f"next_run_at={next_run}",
        ]


async def _run_agent(settings: Settings, *, once: bool) -> AgentRunSummary:
    gateway = await asyncio.to_thread(build_gateway, settings)
    try:
        await _ensure_destination(gateway, settings)
        service = AgentService(gateway, settings)
        if once:
            await service.poll.poll_once()
            if settings.schedule.enabled:
                await service.schedules.check_once()
            await service.wait_idle()
            return service.summary

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)
        return await service.run(stop_event)
    finally:
        await gateway.close()


async def _ensure_destination(gateway: BackendGateway, settings: Settings) -> None:
    if not isinstance(gateway, SqlGateway):
        return
    destination = settings.destination
    await asyncio.to_thread(
        gateway.repository.register_destination,
        destination_id=destination.destination_id,
        organization_id=destination.organization_id,
        name=destination.name,
        hostname=socket.gethostname(),
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[ExecutionRepository]:
    repository = ExecutionRepository(
        settings.db_path,
        busy_timeout_ms=settings.backend.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()

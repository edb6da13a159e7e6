"""Local backend persistence backed by SQLModel + SQLite."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from exec_agent.agent.models import (
    DestinationRecord,
    DestinationStatus,
    ExecutionStatus,
    ScheduleRecord,
    ScheduleType,
    TaskRecord,
    TaskStatus,
    WorkItem,
    WorkItemCreate,
    WorkItemEventView,
)
from exec_agent.gateway.base import CHANGE_INSERT, CHANGE_UPDATE, WorkItemQuery
from exec_agent.storage.alembic_runner import upgrade_head
from exec_agent.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from exec_agent.storage.sqlmodel_models import (
    Destination,
    DestinationHeartbeat,
    Execution,
    ExecutionEvent,
    Schedule,
    Task,
)

EVENT_INSERTED = "inserted"
EVENT_CLAIMED = "claimed"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_UPDATED = "updated"

_PATCHABLE_FIELDS = {
    "status",
    "output_result",
    "error_message",
    "started_at",
    "completed_at",
    "duration_ms",
}


@dataclass(slots=True)
class TaskCreate:
    """Input payload for registering a task definition."""

    name: str
    task_type: str
    organization_id: str
    task_id: str | None = None
    status: str = TaskStatus.ACTIVE.value
    configuration: dict[str, Any] = field(default_factory=dict)
    workflow: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ScheduleCreate:
    task_id: str
    schedule_type: str
    interval_seconds: int | None = None
    cron_expression: str | None = None
    next_run_at: datetime | None = None
    schedule_id: str | None = None
    input_params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ChangeRecord:
    seq: int
    kind: str
    item: WorkItem


class ExecutionRepository:
    """Work item persistence facade with conditional-update claims."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Destinations

    def register_destination(
        self,
        *,
        destination_id: str,
        organization_id: str,
        name: str,
        hostname: str | None = None,
    ) -> DestinationRecord:
        """Create or refresh a destination row."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Destination, destination_id)
            if row is None:
                row = Destination(
                    destination_id=destination_id,
                    organization_id=organization_id,
                    name=name,
                    hostname=hostname,
                    status=DestinationStatus.OFFLINE.value,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.organization_id = organization_id
                row.name = name
                row.hostname = hostname
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_destination_record(row)

    def get_destination(self, destination_id: str) -> DestinationRecord | None:
        with Session(self.engine) as session:
            row = session.get(Destination, destination_id)
            return _to_destination_record(row) if row is not None else None

    def set_destination_status(self, destination_id: str, status: DestinationStatus) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Destination)
                .where(col(Destination.destination_id) == destination_id)
                .values(status=status.value, updated_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def insert_heartbeat(
        self,
        *,
        destination_id: str,
        status: DestinationStatus,
        active_tasks: int,
        queued_tasks: int,
    ) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                DestinationHeartbeat(
                    destination_id=destination_id,
                    status=status.value,
                    active_tasks=active_tasks,
                    queued_tasks=queued_tasks,
                    created_at=now,
                ),
            )
            session.exec(
                sa_update(Destination)
                .where(col(Destination.destination_id) == destination_id)
                .values(
                    status=status.value,
                    last_heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()

    def count_heartbeats(self, destination_id: str) -> int:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DestinationHeartbeat.id).where(
                    DestinationHeartbeat.destination_id == destination_id,
                ),
            ).all()
            return len(rows)

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskRecord:
        now = utc_now()
        with Session(self.engine) as session:
            row = Task(
                task_id=payload.task_id or str(uuid4()),
                organization_id=payload.organization_id,
                name=payload.name,
                task_type=payload.task_type,
                status=payload.status,
                configuration_json=dump_json(payload.configuration),
                workflow_json=dump_json(payload.workflow) if payload.workflow else None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_record(row)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_record(row) if row is not None else None

    def set_task_status(self, task_id: str, status: TaskStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def delete_task(self, task_id: str) -> bool:
        """Delete a task; its executions and schedules cascade."""

        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    # Work items

    def insert_work_item(self, payload: WorkItemCreate) -> WorkItem:
        """Create a pending work item."""

        now = utc_now()
        item_id = payload.item_id or str(uuid4())
        with Session(self.engine) as session:
            if session.get(Task, payload.task_id) is None:
                raise LookupError(f"Task not found: {payload.task_id}")
            row = Execution(
                execution_id=item_id,
                task_id=payload.task_id,
                status=ExecutionStatus.PENDING.value,
                destination_id=payload.destination_id,
                input_params_json=dump_json(payload.input_params),
                trigger=payload.trigger,
                trigger_source=payload.trigger_source,
                schedule_id=payload.schedule_id,
                queued_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                execution_id=item_id,
                event_type=EVENT_INSERTED,
                status_from=None,
                status_to=ExecutionStatus.PENDING,
                destination_id=payload.destination_id,
                details={"trigger": payload.trigger},
            )
            session.commit()
            session.refresh(row)
            return _to_work_item(row)

    def get_work_item(self, item_id: str) -> WorkItem | None:
        with Session(self.engine) as session:
            row = session.get(Execution, item_id)
            return _to_work_item(row) if row is not None else None

    def list_work_items(self, query: WorkItemQuery) -> list[WorkItem]:
        statement = select(Execution)
        if query.status is not None:
            statement = statement.where(Execution.status == query.status.value)
        if query.unclaimed_only:
            statement = statement.where(col(Execution.claimed_at).is_(None))

        org_tasks = None
        if query.organization_id is not None:
            org_tasks = select(Task.task_id).where(Task.organization_id == query.organization_id)

        scopes = []
        if query.destination_id is not None:
            scopes.append(col(Execution.destination_id) == query.destination_id)
        if query.unassigned:
            unassigned = col(Execution.destination_id).is_(None)
            if org_tasks is not None:
                unassigned = and_(unassigned, col(Execution.task_id).in_(org_tasks))
            scopes.append(unassigned)
        if scopes:
            statement = statement.where(or_(*scopes))
        elif org_tasks is not None:
            statement = statement.where(col(Execution.task_id).in_(org_tasks))

        statement = statement.order_by(
            col(Execution.queued_at).asc(),
            col(Execution.execution_id).asc(),
        ).limit(query.limit)
        with Session(self.engine) as session:
            return [_to_work_item(row) for row in session.exec(statement).all()]

    def claim_work_item(
        self,
        *,
        item_id: str,
        destination_id: str,
        claimed_at: datetime,
    ) -> WorkItem | None:
        """Set destination and claim fence only if the row is still claimable."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == item_id,
                    col(Execution.status) == ExecutionStatus.PENDING.value,
                    col(Execution.claimed_at).is_(None),
                    or_(
                        col(Execution.destination_id).is_(None),
                        col(Execution.destination_id) == destination_id,
                    ),
                )
                .values(
                    status=ExecutionStatus.CLAIMED.value,
                    destination_id=destination_id,
                    claimed_at=to_db_datetime(claimed_at),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._add_event(
                session=session,
                execution_id=item_id,
                event_type=EVENT_CLAIMED,
                status_from=ExecutionStatus.PENDING,
                status_to=ExecutionStatus.CLAIMED,
                destination_id=destination_id,
                details={},
            )
            session.commit()
            claimed = session.exec(
                select(Execution).where(Execution.execution_id == item_id),
            ).one()
            return _to_work_item(claimed)

    def update_work_item(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        destination_id: str,
    ) -> bool:
        """Apply a partial update to a row owned by ``destination_id``."""

        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported work item fields: {', '.join(sorted(unknown))}")

        values = _patch_to_values(patch)
        values["updated_at"] = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            current = session.get(Execution, item_id)
            if current is None or current.destination_id != destination_id:
                return False
            status_from = ExecutionStatus(current.status)
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == item_id,
                    col(Execution.destination_id) == destination_id,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            status_to = ExecutionStatus(values["status"]) if "status" in values else None
            self._add_event(
                session=session,
                execution_id=item_id,
                event_type=EVENT_STATUS_CHANGED if status_to is not None else EVENT_UPDATED,
                status_from=status_from if status_to is not None else None,
                status_to=status_to,
                destination_id=destination_id,
                details={"error_message": patch["error_message"]}
                if patch.get("error_message")
                else {},
            )
            session.commit()
            return True

    def list_events(self, item_id: str) -> list[WorkItemEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionEvent)
                .where(ExecutionEvent.execution_id == item_id)
                .order_by(col(ExecutionEvent.seq).asc()),
            ).all()
            return [
                WorkItemEventView(
                    seq=row.seq or 0,
                    item_id=row.execution_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    details=load_json(row.details_json, None),
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    def latest_change_seq(self) -> int:
        with Session(self.engine) as session:
            seq = session.exec(
                select(ExecutionEvent.seq).order_by(col(ExecutionEvent.seq).desc()).limit(1),
            ).one_or_none()
            return seq or 0

    def read_changes(self, *, after_seq: int, limit: int = 100) -> list[ChangeRecord]:
        """Return row snapshots for events appended after ``after_seq``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ExecutionEvent, Execution)
                .join(Execution, col(Execution.execution_id) == col(ExecutionEvent.execution_id))
                .where(col(ExecutionEvent.seq) > after_seq)
                .order_by(col(ExecutionEvent.seq).asc())
                .limit(limit),
            ).all()
            return [
                ChangeRecord(
                    seq=event_row.seq or 0,
                    kind=CHANGE_INSERT if event_row.event_type == EVENT_INSERTED else CHANGE_UPDATE,
                    item=_to_work_item(execution_row),
                )
                for event_row, execution_row in rows
            ]

    # Schedules

    def create_schedule(self, payload: ScheduleCreate) -> ScheduleRecord:
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(Task, payload.task_id) is None:
                raise LookupError(f"Task not found: {payload.task_id}")
            row = Schedule(
                schedule_id=payload.schedule_id or str(uuid4()),
                task_id=payload.task_id,
                schedule_type=payload.schedule_type,
                interval_seconds=payload.interval_seconds,
                cron_expression=payload.cron_expression,
                is_enabled=True,
                next_run_at=to_db_datetime(payload.next_run_at or now),
                input_params_json=dump_json(payload.input_params),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_record(row)

    def get_schedule(self, schedule_id: str) -> ScheduleRecord | None:
        with Session(self.engine) as session:
            row = session.get(Schedule, schedule_id)
            return _to_schedule_record(row) if row is not None else None

    def list_due_schedules(self, *, organization_id: str, now: datetime) -> list[ScheduleRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Schedule)
                .join(Task, col(Task.task_id) == col(Schedule.task_id))
                .where(
                    col(Schedule.is_enabled).is_(True),
                    col(Schedule.next_run_at).is_not(None),
                    col(Schedule.next_run_at) <= to_db_datetime(now),
                    col(Schedule.schedule_type) != ScheduleType.MANUAL.value,
                    Task.organization_id == organization_id,
                    Task.status == TaskStatus.ACTIVE.value,
                )
                .order_by(col(Schedule.next_run_at).asc()),
            ).all()
            return [_to_schedule_record(row) for row in rows]

    def advance_schedule(
        self,
        *,
        schedule_id: str,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
        is_enabled: bool,
        last_run_at: datetime,
        run_count: int,
    ) -> bool:
        """Compare-and-set the schedule's next run time."""

        expected = (
            col(Schedule.next_run_at).is_(None)
            if expected_next_run_at is None
            else col(Schedule.next_run_at) == to_db_datetime(expected_next_run_at)
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Schedule)
                .where(col(Schedule.schedule_id) == schedule_id, expected)
                .values(
                    next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
                    is_enabled=is_enabled,
                    last_run_at=to_db_datetime(last_run_at),
                    run_count=run_count,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        execution_id: str,
        event_type: str,
        status_from: ExecutionStatus | None,
        status_to: ExecutionStatus | None,
        destination_id: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ExecutionEvent(
                execution_id=execution_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                destination_id=destination_id,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _patch_to_values(patch: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in patch.items():
        if key == "status":
            values["status"] = ExecutionStatus(value).value
        elif key == "output_result":
            values["output_result_json"] = dump_json(value)
        elif key in {"started_at", "completed_at"}:
            values[key] = to_db_datetime(value) if value is not None else None
        else:
            values[key] = value
    return values


def _to_work_item(row: Execution) -> WorkItem:
    return WorkItem(
        item_id=row.execution_id,
        task_id=row.task_id,
        status=ExecutionStatus(row.status),
        destination_id=row.destination_id,
        claimed_at=optional_utc(row.claimed_at),
        input_params=load_json(row.input_params_json, {}),
        output_result=load_json(row.output_result_json, None),
        error_message=row.error_message,
        trigger=row.trigger,
        trigger_source=row.trigger_source,
        schedule_id=row.schedule_id,
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=optional_utc(row.updated_at),
        duration_ms=row.duration_ms,
    )


def _to_task_record(row: Task) -> TaskRecord:
    return TaskRecord(
        task_id=row.task_id,
        organization_id=row.organization_id,
        name=row.name,
        task_type=row.task_type,
        status=row.status,
        configuration=load_json(row.configuration_json, {}),
        workflow=load_json(row.workflow_json, []),
    )


def _to_schedule_record(row: Schedule) -> ScheduleRecord:
    return ScheduleRecord(
        schedule_id=row.schedule_id,
        task_id=row.task_id,
        schedule_type=row.schedule_type,
        is_enabled=row.is_enabled,
        next_run_at=optional_utc(row.next_run_at),
        interval_seconds=row.interval_seconds,
        cron_expression=row.cron_expression,
        last_run_at=optional_utc(row.last_run_at),
        run_count=row.run_count,
        input_params=load_json(row.input_params_json, {}),
    )


def _to_destination_record(row: Destination) -> DestinationRecord:
    return DestinationRecord(
        destination_id=row.destination_id,
        organization_id=row.organization_id,
        name=row.name,
        hostname=row.hostname,
        status=row.status,
        last_heartbeat_at=optional_utc(row.last_heartbeat_at),
    )

"""SQLModel ORM tables for the local backend."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Destination(SQLModel, table=True):
    __tablename__ = "destinations"  # type: ignore[bad-override]

    destination_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    name: str
    hostname: str | None = None
    status: str = Field(default="offline", index=True)
    last_heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DestinationHeartbeat(SQLModel, table=True):
    __tablename__ = "destination_heartbeats"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_destination_heartbeats_destination_time", "destination_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    destination_id: str = Field(
        sa_column=Column(
            ForeignKey("destinations.destination_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    status: str
    active_tasks: int = 0
    queued_tasks: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    name: str
    task_type: str = Field(index=True)
    status: str = Field(default="active", index=True)
    configuration_json: str | None = Field(default=None, sa_column=Column(Text))
    workflow_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Schedule(SQLModel, table=True):
    __tablename__ = "schedules"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_schedules_due", "is_enabled", "next_run_at"),)

    schedule_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    schedule_type: str
    interval_seconds: int | None = None
    cron_expression: str | None = None
    is_enabled: bool = True
    next_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_count: int = 0
    input_params_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_executions_claimable", "status", "destination_id", "claimed_at"),
    )

    execution_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    destination_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    input_params_json: str | None = Field(default=None, sa_column=Column(Text))
    output_result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    trigger: str = "manual"
    trigger_source: str | None = None
    schedule_id: str | None = None
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionEvent(SQLModel, table=True):
    __tablename__ = "execution_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_execution_events_execution_seq", "execution_id", "seq"),
        {"sqlite_autoincrement": True},
    )

    seq: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    destination_id: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

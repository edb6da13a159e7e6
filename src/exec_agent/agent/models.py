"""Domain models for work items, tasks and local execution."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionStatus(str, Enum):
    """Work item lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}


class DestinationStatus(str, Enum):
    """Presence states reported by an agent."""

    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class TaskType(str, Enum):
    """Closed set of task kinds the runner knows how to dispatch."""

    SINGLE = "single"
    WORKFLOW = "workflow"
    BATCH = "batch"
    REPORT = "report"
    MONITORING = "monitoring"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class ScheduleType(str, Enum):
    INTERVAL = "interval"
    ONCE = "once"
    CRON = "cron"
    MANUAL = "manual"


class ExecutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"


class DetectionChannel(str, Enum):
    """Path through which a candidate work item reached the claim coordinator."""

    PUSH = "push"
    POLL = "poll"
    SCHEDULE = "schedule"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(slots=True)
class WorkItem:
    """One execution row as seen by the agent."""

    item_id: str
    task_id: str
    status: ExecutionStatus
    destination_id: str | None = None
    claimed_at: datetime | None = None
    input_params: dict[str, Any] = field(default_factory=dict)
    output_result: dict[str, Any] | None = None
    error_message: str | None = None
    trigger: str = ExecutionTrigger.MANUAL.value
    trigger_source: str | None = None
    schedule_id: str | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    duration_ms: int | None = None


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for inserting a pending work item."""

    task_id: str
    item_id: str | None = None
    destination_id: str | None = None
    input_params: dict[str, Any] = field(default_factory=dict)
    trigger: str = ExecutionTrigger.MANUAL.value
    trigger_source: str | None = None
    schedule_id: str | None = None


@dataclass(slots=True)
class TaskRecord:
    """Read-only task definition resolved for a work item."""

    task_id: str
    organization_id: str
    name: str
    task_type: str
    status: str = TaskStatus.ACTIVE.value
    configuration: dict[str, Any] = field(default_factory=dict)
    workflow: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ScheduleRecord:
    schedule_id: str
    task_id: str
    schedule_type: str
    is_enabled: bool
    next_run_at: datetime | None
    interval_seconds: int | None = None
    cron_expression: str | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    input_params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DestinationRecord:
    destination_id: str
    organization_id: str
    name: str
    hostname: str | None
    status: str
    last_heartbeat_at: datetime | None = None


@dataclass(slots=True)
class WorkItemEventView:
    """Audit trail entry for a work item."""

    seq: int
    item_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    details: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class AutoResponseRule:
    """Scripted keystroke sent to an interactive child process."""

    input: str = ""
    trigger: re.Pattern[str] | None = None
    delay_seconds: float = 0.0
    immediate: bool = False
    close_after: bool = False

    @property
    def payload(self) -> bytes:
        text = self.input if self.input.endswith("\n") else f"{self.input}\n"
        return text.encode("utf-8")


@dataclass(frozen=True, slots=True)
class ClaimAttempt:
    item_id: str
    destination_id: str
    channel: DetectionChannel


@dataclass(slots=True)
class ClaimResult:
    outcome: ClaimOutcome
    attempt: ClaimAttempt
    item: WorkItem | None = None
    reason: str | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome is ClaimOutcome.CLAIMED


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one local process run."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    interrupted: bool = False
    fired_rules: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class StepResult:
    """Result entry recorded for one command of a work item."""

    step: int
    name: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    interrupted: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "step": self.step,
            "name": self.name,
            "command": self.command,
            "exit_code": self.exit_code,
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }
        if self.interrupted:
            payload["interrupted"] = True
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(slots=True)
class ExecutionOutcome:
    """Final result of running one claimed work item."""

    status: ExecutionStatus
    output_result: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

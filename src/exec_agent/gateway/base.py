"""Backend gateway interface consumed by the agent."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from exec_agent.agent.models import (
    DestinationStatus,
    ExecutionStatus,
    ScheduleRecord,
    TaskRecord,
    WorkItem,
    WorkItemCreate,
)

CHANGE_INSERT = "insert"
CHANGE_UPDATE = "update"


class GatewayError(RuntimeError):
    """Backend call failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class WorkItemQuery:
    """Filtered work item lookup used by polling and the CLI.

    ``destination_id`` selects rows assigned to that destination,
    ``unassigned`` selects rows with no destination. Both may be set, in
    which case the union is returned.
    """

    destination_id: str | None = None
    unassigned: bool = False
    organization_id: str | None = None
    status: ExecutionStatus | None = ExecutionStatus.PENDING
    unclaimed_only: bool = True
    limit: int = 10


@dataclass(frozen=True, slots=True)
class ChangeFilter:
    """Push predicate: assigned to me, or unassigned and pending."""

    destination_id: str

    def matches(self, item: WorkItem) -> bool:
        if item.destination_id == self.destination_id:
            return True
        return item.destination_id is None and item.status is ExecutionStatus.PENDING


@dataclass(slots=True)
class ChangeEvent:
    kind: str
    item: WorkItem


class BackendGateway(Protocol):
    """Protocol implemented by backend adapters."""

    async def claim_work_item(
        self,
        *,
        item_id: str,
        destination_id: str,
        claimed_at: datetime,
    ) -> WorkItem | None:
        """Conditionally claim one pending unclaimed row; ``None`` when the race was lost."""

    async def list_work_items(self, query: WorkItemQuery) -> list[WorkItem]:
        """Return rows matching the query ordered by queue time."""

    def subscribe(self, change_filter: ChangeFilter) -> AsyncIterator[ChangeEvent]:
        """Stream row changes matching the filter until cancelled or disconnected."""

    async def get_work_item(self, item_id: str) -> WorkItem | None: ...

    async def update_work_item(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        destination_id: str,
    ) -> bool:
        """Apply a partial update to a row owned by ``destination_id``."""

    async def insert_work_item(self, payload: WorkItemCreate) -> WorkItem: ...

    async def get_task(self, task_id: str) -> TaskRecord | None: ...

    async def list_due_schedules(
        self,
        *,
        organization_id: str,
        now: datetime,
    ) -> list[ScheduleRecord]:
        """Enabled schedules of active tasks whose next run is due."""

    async def advance_schedule(
        self,
        *,
        schedule_id: str,
        expected_next_run_at: datetime | None,
        next_run_at: datetime | None,
        is_enabled: bool,
        last_run_at: datetime,
        run_count: int,
    ) -> bool:
        """Move a schedule forward only if nobody else did it first."""

    async def set_destination_status(
        self,
        destination_id: str,
        status: DestinationStatus,
    ) -> None: ...

    async def insert_heartbeat(
        self,
        *,
        destination_id: str,
        status: DestinationStatus,
        active_tasks: int,
        queued_tasks: int,
    ) -> None: ...

    async def close(self) -> None: ...

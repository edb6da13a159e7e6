"""Backend gateway over the local SQLite repository."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from exec_agent.agent.models import (
    DestinationStatus,
    ScheduleRecord,
    TaskRecord,
    WorkItem,
    WorkItemCreate,
)
from exec_agent.gateway.base import ChangeEvent, ChangeFilter, GatewayError, WorkItemQuery
from exec_agent.storage.repository import ExecutionRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlGateway:
    """Async adapter running repository calls in worker threads.

    The change feed tails the ``execution_events`` log by sequence number,
    starting at the newest event when the subscription opens.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        *,
        feed_interval_seconds: float = 1.0,
        feed_batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self._feed_interval_seconds = feed_interval_seconds
        self._feed_batch_size = feed_batch_size

    async def claim_work_item(
        self,
        *,
        item_id: str,
        destination_id: str,
        claimed_at: datetime,
    ) -> WorkItem | None:
        return await self._call(
            self.repository.claim_work_item,
            item_id=item_id,
            destination_id=destination_id,
            claimed_at=claimed_at,
        )

    async def list_work_items(self, query: WorkItemQuery) -> list[WorkItem]:
        return await self._call(self.repository.list_work_items, query)

    async def subscribe(self, change_filter: ChangeFilter) -> AsyncIterator[ChangeEvent]:
        cursor = await self._call(self.repository.latest_change_seq)
        while True:
            changes = await self._call(
                self.repository.read_changes,
                after_seq=cursor,
                limit=self._feed_batch_size,
            )
            for change in changes:
                cursor = change.seq
                if change_filter.matches(change.item):
                    yield ChangeEvent(kind=change.kind, item=change.item)
            if len(changes) < self._feed_batch_size:
                await asyncio.sleep(self._feed_interval_seconds)

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        return await self._call(self.repository.get_work_item, item_id)

    async def update_work_item(
        self,
        item_id: str,
        patch: dict[str, Any],
        *,
        destination_id: str,
    ) -> bool:
        return await self._call(
            self.repository.update_work_item,
            item_id,
            patch,
            destination_id=destination_id,
        )

    async def insert_work_item(self, payload: WorkItemCreate) -> WorkItem:
        try:
            return await self._call(self.repository.insert_work_item, payload)
        except LookupError as error:
            raise GatewayError(str(error), transient=False) from error

    async def get_task(self, task_id: str) -> TaskRecord | None:
        return await self._call(self.repository.get_task, task_id)

    async def list_due_schedules(
        self,
        *,
        organization_id: str,
        now: datetime,
    ) -> list[ScheduleRecord]:
        return await self._call(
            self.repository.list_due_schedules,
            organization_id=organization_id,
            now=now,
        )

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
        return await self._call(
            self.repository.advance_schedule,
            schedule_id=schedule_id,
            expected_next_run_at=expected_next_run_at,
            next_run_at=next_run_at,
            is_enabled=is_enabled,
            last_run_at=last_run_at,
            run_count=run_count,
        )

    async def set_destination_status(
        self,
        destination_id: str,
        status: DestinationStatus,
    ) -> None:
        updated = await self._call(self.repository.set_destination_status, destination_id, status)
        if not updated:
            raise GatewayError(f"Destination not registered: {destination_id}", transient=False)

    async def insert_heartbeat(
        self,
        *,
        destination_id: str,
        status: DestinationStatus,
        active_tasks: int,
        queued_tasks: int,
    ) -> None:
        await self._call(
            self.repository.insert_heartbeat,
            destination_id=destination_id,
            status=status,
            active_tasks=active_tasks,
            queued_tasks=queued_tasks,
        )

    async def close(self) -> None:
        await asyncio.to_thread(self.repository.close)

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except SQLAlchemyError as error:
            logger.debug("SQLite backend call %s failed: %s", func.__name__, error)
            raise GatewayError(f"SQLite backend error: {error}", transient=True) from error

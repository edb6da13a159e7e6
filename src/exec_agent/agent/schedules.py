"""Materialise due schedules as pending work items for this destination."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from exec_agent.agent.detection import CandidateHandler
from exec_agent.agent.models import (
    DetectionChannel,
    ExecutionTrigger,
    ScheduleRecord,
    ScheduleType,
    WorkItem,
    WorkItemCreate,
)
from exec_agent.gateway.base import BackendGateway, GatewayError
from exec_agent.storage.common import utc_now

logger = logging.getLogger(__name__)

CRON_FALLBACK_STEP = timedelta(hours=1)


def next_occurrence(schedule: ScheduleRecord, now: datetime) -> tuple[datetime | None, bool]:
    """Return ``(next_run_at, is_enabled)`` after ``schedule`` fires at ``now``."""

    if schedule.schedule_type == ScheduleType.INTERVAL.value:
        step = schedule.interval_seconds or 0
        if step <= 0:
            logger.warning("Schedule %s has no positive interval, disabling it", schedule.schedule_id)
            return None, False
        upcoming = schedule.next_run_at or now
        while upcoming <= now:
            upcoming += timedelta(seconds=step)
        return upcoming, True
    if schedule.schedule_type == ScheduleType.CRON.value:
        return now + CRON_FALLBACK_STEP, True
    return None, False


class ScheduleTrigger:
    """Fire due schedules once each, even when several agents share an organization.

    The schedule row is advanced with a compare-and-set on ``next_run_at``
    before the work item is inserted, so only the agent that moved the
    schedule forward creates the occurrence.
    """

    def __init__(  # noqa: PLR0913
        self,
        gateway: BackendGateway,
        handler: CandidateHandler,
        *,
        destination_id: str,
        organization_id: str,
        check_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._handler = handler
        self._destination_id = destination_id
        self._organization_id = organization_id
        self._check_interval_seconds = check_interval_seconds
        self._clock = clock

    async def run(self) -> None:
        while True:
            try:
                await self.check_once()
            except GatewayError as error:
                logger.warning("Schedule check failed: %s", error)
            await asyncio.sleep(self._check_interval_seconds)

    async def check_once(self) -> list[WorkItem]:
        now = self._clock()
        due = await self._gateway.list_due_schedules(
            organization_id=self._organization_id,
            now=now,
        )
        created: list[WorkItem] = []
        for schedule in due:
            item = await self._fire(schedule, now)
            if item is not None:
                created.append(item)
                await self._handler(item, DetectionChannel.SCHEDULE)
        return created

    async def _fire(self, schedule: ScheduleRecord, now: datetime) -> WorkItem | None:
        next_run_at, is_enabled = next_occurrence(schedule, now)
        advanced = await self._gateway.advance_schedule(
            schedule_id=schedule.schedule_id,
            expected_next_run_at=schedule.next_run_at,
            next_run_at=next_run_at,
            is_enabled=is_enabled,
            last_run_at=now,
            run_count=schedule.run_count + 1,
        )
        if not advanced:
            logger.debug("Schedule %s was already fired by another agent", schedule.schedule_id)
            return None

        try:
            item = await self._gateway.insert_work_item(
                WorkItemCreate(
                    task_id=schedule.task_id,
                    destination_id=self._destination_id,
                    input_params=dict(schedule.input_params),
                    trigger=ExecutionTrigger.SCHEDULED.value,
                    trigger_source=f"schedule:{schedule.schedule_id}",
                    schedule_id=schedule.schedule_id,
                ),
            )
        except GatewayError as error:
            logger.error("Schedule %s fired but the work item was not created: %s", schedule.schedule_id, error)
            return None
        logger.info("Schedule %s created work item %s", schedule.schedule_id, item.item_id)
        return item

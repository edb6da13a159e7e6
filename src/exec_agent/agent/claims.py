"""Claim coordinator: at most one destination wins each pending work item."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from exec_agent.agent.models import (
    ClaimAttempt,
    ClaimOutcome,
    ClaimResult,
    DetectionChannel,
    WorkItem,
)
from exec_agent.gateway.base import BackendGateway, GatewayError
from exec_agent.storage.common import utc_now

logger = logging.getLogger(__name__)


class SeenSet:
    """Item ids attempted recently, forgotten after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def check_and_add(self, item_id: str) -> bool:
        """Record ``item_id``; ``True`` if it was already present and fresh."""

        now = self._clock()
        self._expire(now)
        if item_id in self._seen:
            return True
        self._seen[item_id] = now
        return False

    def discard(self, item_id: str) -> None:
        self._seen.pop(item_id, None)

    def __len__(self) -> int:
        return len(self._seen)

    def _expire(self, now: float) -> None:
        if self._ttl_seconds <= 0:
            self._seen.clear()
            return
        stale = [key for key, seen_at in self._seen.items() if now - seen_at >= self._ttl_seconds]
        for key in stale:
            del self._seen[key]


class ClaimCoordinator:
    """Turn candidate work items into exclusive ownership.

    The backend's conditional update is the only thing that decides who wins.
    The seen-set only saves redundant round trips when push and poll report
    the same row close together.
    """

    def __init__(  # noqa: PLR0913
        self,
        gateway: BackendGateway,
        *,
        destination_id: str,
        organization_id: str,
        allowed_task_types: Iterable[str] = (),
        seen_ttl_seconds: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self.destination_id = destination_id
        self.organization_id = organization_id
        self._allowed_task_types = frozenset(allowed_task_types)
        self._seen = SeenSet(seen_ttl_seconds, clock=monotonic)
        self._clock = clock

    async def try_claim(self, item: WorkItem, *, channel: DetectionChannel) -> ClaimResult:
        attempt = ClaimAttempt(
            item_id=item.item_id,
            destination_id=self.destination_id,
            channel=channel,
        )
        if self._seen.check_and_add(item.item_id):
            logger.debug("Skipping %s from %s: attempted recently", item.item_id, channel.value)
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED, attempt, reason="recently attempted")

        try:
            rejection = await self._authorize(item)
            if rejection is not None:
                logger.debug("Rejected %s from %s: %s", item.item_id, channel.value, rejection)
                return ClaimResult(ClaimOutcome.REJECTED, attempt, reason=rejection)

            claimed = await self._gateway.claim_work_item(
                item_id=item.item_id,
                destination_id=self.destination_id,
                claimed_at=self._clock(),
            )
        except GatewayError as error:
            self._seen.discard(item.item_id)
            logger.warning("Claim of %s via %s failed: %s", item.item_id, channel.value, error)
            return ClaimResult(ClaimOutcome.ERROR, attempt, reason=str(error))

        if claimed is None:
            logger.debug("Work item %s already claimed (seen via %s)", item.item_id, channel.value)
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED, attempt)

        logger.info("Claimed work item %s via %s", item.item_id, channel.value)
        return ClaimResult(ClaimOutcome.CLAIMED, attempt, item=claimed)

    async def _authorize(self, item: WorkItem) -> str | None:
        if item.destination_id not in {None, self.destination_id}:
            return f"assigned to {item.destination_id}"
        task = await self._gateway.get_task(item.task_id)
        if task is None:
            return f"task {item.task_id} not found"
        if task.organization_id != self.organization_id:
            return f"task belongs to organization {task.organization_id}"
        if self._allowed_task_types and task.task_type not in self._allowed_task_types:
            return f"task type {task.task_type} is not allowed here"
        return None

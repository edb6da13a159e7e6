"""Push and poll channels that surface candidate work items.

Both channels hand candidates to the same callback. Push gives low latency,
poll is the safety net: it runs for the agent's whole lifetime, covers the
startup backlog and any gap while push reconnects.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from exec_agent.agent.models import DetectionChannel, ExecutionStatus, WorkItem
from exec_agent.gateway.base import BackendGateway, ChangeFilter, GatewayError, WorkItemQuery

logger = logging.getLogger(__name__)

CandidateHandler = Callable[[WorkItem, DetectionChannel], Awaitable[None]]


def is_candidate(item: WorkItem) -> bool:
    return item.status is ExecutionStatus.PENDING and item.claimed_at is None


class PushListener:
    """Keep a change subscription open, resubscribing with jittered backoff."""

    def __init__(  # noqa: PLR0913
        self,
        gateway: BackendGateway,
        handler: CandidateHandler,
        *,
        destination_id: str,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        rng: random.Random | None = None,
    ) -> None:
        self._gateway = gateway
        self._handler = handler
        self._filter = ChangeFilter(destination_id=destination_id)
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._rng = rng or random.Random()
        self.events_received = 0
        self.reconnects = 0

    async def run(self) -> None:
        backoff = self._initial_backoff
        while True:
            try:
                async for event in self._gateway.subscribe(self._filter):
                    backoff = self._initial_backoff
                    self.events_received += 1
                    if is_candidate(event.item):
                        await self._handler(event.item, DetectionChannel.PUSH)
                logger.warning("Change subscription closed by the backend")
            except GatewayError as error:
                logger.warning("Change subscription failed: %s", error)
            except Exception:
                logger.exception("Change subscription crashed")

            delay = self.jittered(backoff)
            self.reconnects += 1
            logger.info("Resubscribing in %.1fs", delay)
            await asyncio.sleep(delay)
            backoff = min(backoff * 2, self._max_backoff)

    def jittered(self, backoff: float) -> float:
        half = backoff / 2
        return half + self._rng.uniform(0, half)


class PollLoop:
    """Periodic re-scan for pending rows this destination may claim."""

    def __init__(  # noqa: PLR0913
        self,
        gateway: BackendGateway,
        handler: CandidateHandler,
        *,
        destination_id: str,
        organization_id: str,
        interval_seconds: float = 15.0,
        batch_limit: int = 10,
    ) -> None:
        self._gateway = gateway
        self._handler = handler
        self._destination_id = destination_id
        self._organization_id = organization_id
        self._interval_seconds = interval_seconds
        self._batch_limit = batch_limit
        self.polls = 0

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except GatewayError as error:
                logger.warning("Poll for work items failed: %s", error)
            except Exception:
                logger.exception("Poll for work items crashed")
            await asyncio.sleep(self._interval_seconds)

    async def poll_once(self) -> int:
        """Hand every current candidate to the handler; return how many were found."""

        self.polls += 1
        assigned = await self._gateway.list_work_items(
            WorkItemQuery(destination_id=self._destination_id, limit=self._batch_limit),
        )
        unassigned = await self._gateway.list_work_items(
            WorkItemQuery(
                unassigned=True,
                organization_id=self._organization_id,
                limit=self._batch_limit,
            ),
        )
        candidates: dict[str, WorkItem] = {}
        for item in [*assigned, *unassigned]:
            if is_candidate(item):
                candidates.setdefault(item.item_id, item)
        if candidates:
            logger.debug("Poll found %d candidate(s)", len(candidates))
        for item in candidates.values():
            await self._handler(item, DetectionChannel.POLL)
        return len(candidates)

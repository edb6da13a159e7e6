"""Agent service: detection channels, claiming and concurrent execution."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from exec_agent.agent.claims import ClaimCoordinator
from exec_agent.agent.detection import PollLoop, PushListener
from exec_agent.agent.models import (
    ClaimResult,
    DetectionChannel,
    ExecutionOutcome,
    ExecutionStatus,
    WorkItem,
)
from exec_agent.agent.presence import PresenceReporter
from exec_agent.agent.runner import ExecutionRunner
from exec_agent.agent.schedules import ScheduleTrigger
from exec_agent.agent.status import StatusReporter
from exec_agent.config import Settings
from exec_agent.gateway.base import BackendGateway

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRunSummary:
    """Counters reported when the agent stops."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0


class AgentService:
    """One destination's long-running loop.

    Every channel calls :meth:`handle_candidate`. A local set of executing
    item ids turns a re-detected item into a no-op; exclusivity across
    agents comes from the claim itself.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        settings: Settings,
        *,
        runner: ExecutionRunner | None = None,
        shutdown_timeout_seconds: float = 30.0,
    ) -> None:
        destination = settings.destination
        self._gateway = gateway
        self._settings = settings
        self._capacity = settings.execution.max_concurrent_items
        self._shutdown_timeout_seconds = shutdown_timeout_seconds
        self.coordinator = ClaimCoordinator(
            gateway,
            destination_id=destination.destination_id,
            organization_id=destination.organization_id,
            allowed_task_types=destination.allowed_task_types,
            seen_ttl_seconds=settings.detection.seen_ttl_seconds,
        )
        self.reporter = StatusReporter(gateway, destination.destination_id)
        self.runner = runner or ExecutionRunner(gateway, self.reporter, settings.execution)
        self.poll = PollLoop(
            gateway,
            self.handle_candidate,
            destination_id=destination.destination_id,
            organization_id=destination.organization_id,
            interval_seconds=settings.detection.poll_interval_seconds,
            batch_limit=settings.detection.poll_batch_limit,
        )
        self.push = PushListener(
            gateway,
            self.handle_candidate,
            destination_id=destination.destination_id,
            initial_backoff_seconds=settings.detection.reconnect_initial_seconds,
            max_backoff_seconds=settings.detection.reconnect_max_seconds,
        )
        self.schedules = ScheduleTrigger(
            gateway,
            self.handle_candidate,
            destination_id=destination.destination_id,
            organization_id=destination.organization_id,
            check_interval_seconds=settings.schedule.check_interval_seconds,
        )
        self.presence = PresenceReporter(
            gateway,
            destination_id=destination.destination_id,
            load=self.load,
            capacity=self._capacity,
            interval_seconds=settings.schedule.heartbeat_interval_seconds,
        )
        self.summary = AgentRunSummary()
        self._executing: dict[str, asyncio.Task[ExecutionOutcome | None]] = {}
        self._claiming: set[str] = set()

    def load(self) -> tuple[int, int]:
        return len(self._executing), len(self._claiming)

    def is_executing(self, item_id: str) -> bool:
        return item_id in self._executing

    async def handle_candidate(self, item: WorkItem, channel: DetectionChannel) -> ClaimResult | None:
        """Claim ``item`` and start it in the background; ``None`` when skipped locally."""

        if item.item_id in self._executing or item.item_id in self._claiming:
            logger.debug("Work item %s is already handled here (%s)", item.item_id, channel.value)
            return None
        if self._capacity > 0 and len(self._executing) + len(self._claiming) >= self._capacity:
            logger.debug("At capacity (%d), leaving %s for later", self._capacity, item.item_id)
            return None

        self._claiming.add(item.item_id)
        try:
            result = await self.coordinator.try_claim(item, channel=channel)
            if result.claimed and result.item is not None:
                self.summary.claimed += 1
                self._executing[item.item_id] = asyncio.create_task(
                    self._execute(result.item),
                    name=f"execute-{item.item_id}",
                )
        finally:
            self._claiming.discard(item.item_id)
        return result

    async def wait_idle(self) -> None:
        """Wait for every execution started so far."""

        while self._executing:
            await asyncio.gather(*self._executing.values(), return_exceptions=True)

    async def run(self, stop_event: asyncio.Event) -> AgentRunSummary:
        await self.presence.go_online()
        tasks = [
            asyncio.create_task(self.poll.run(), name="poll"),
            asyncio.create_task(self.presence.run(), name="heartbeat"),
        ]
        if self._settings.detection.push_enabled:
            tasks.append(asyncio.create_task(self.push.run(), name="push"))
        if self._settings.schedule.enabled:
            tasks.append(asyncio.create_task(self.schedules.run(), name="schedules"))
        for task in tasks:
            task.add_done_callback(_report_stopped_loop)
        logger.info(
            "Agent %s started (%s)",
            self._settings.destination.destination_id,
            ", ".join(task.get_name() for task in tasks),
        )
        try:
            await stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._drain()
            await self.presence.go_offline()
        logger.info(
            "Agent stopped: claimed=%d completed=%d failed=%d",
            self.summary.claimed,
            self.summary.completed,
            self.summary.failed,
        )
        return self.summary

    async def _drain(self) -> None:
        if not self._executing:
            return
        logger.info("Waiting for %d running work item(s)", len(self._executing))
        running = list(self._executing.values())
        _, pending = await asyncio.wait(running, timeout=self._shutdown_timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(self, item: WorkItem) -> ExecutionOutcome | None:
        try:
            outcome = await self.runner.run(item)
        except asyncio.CancelledError:
            await self.reporter.report(
                item.item_id,
                ExecutionStatus.FAILED,
                {"error_message": "Agent stopped before the work item finished"},
            )
            self.summary.failed += 1
            raise
        except Exception as error:
            logger.exception("Work item %s crashed", item.item_id)
            await self.reporter.report(
                item.item_id,
                ExecutionStatus.FAILED,
                {"error_message": f"Unexpected error: {error}"},
            )
            self.summary.failed += 1
            return None
        finally:
            with contextlib.suppress(KeyError):
                del self._executing[item.item_id]

        if outcome.status is ExecutionStatus.COMPLETED:
            self.summary.completed += 1
        else:
            self.summary.failed += 1
        return outcome


def _report_stopped_loop(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Background loop %s stopped: %r", task.get_name(), error)
    else:
        logger.warning("Background loop %s returned unexpectedly", task.get_name())

from __future__ import annotations

import asyncio
from dataclasses import replace

import allure

from conftest import DESTINATION_ID, make_task
from exec_agent.agent.models import (
    DestinationStatus,
    DetectionChannel,
    ExecutionOutcome,
    ExecutionStatus,
    WorkItem,
    WorkItemCreate,
)
from exec_agent.agent.presence import PresenceReporter
from exec_agent.agent.service import AgentService
from exec_agent.config import Settings
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.repository import EVENT_CLAIMED, ExecutionRepository

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Service"),
]


class _BlockingRunner:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.runs: list[str] = []

    async def run(self, item: WorkItem) -> ExecutionOutcome:
        self.runs.append(item.item_id)
        await self.release.wait()
        return ExecutionOutcome(status=ExecutionStatus.COMPLETED)


def test_item_detected_by_push_and_poll_is_claimed_and_run_once(
    repository: ExecutionRepository,
    gateway: SqlGateway,
    settings: Settings,
) -> None:
    task = make_task(repository, configuration={"command": "echo e1"})
    service = AgentService(gateway, settings)

    async def _scenario() -> WorkItem:
        stop = asyncio.Event()
        agent = asyncio.create_task(service.run(stop))
        await asyncio.sleep(0.2)
        item = await gateway.insert_work_item(WorkItemCreate(task_id=task.task_id))
        for _ in range(200):
            current = await gateway.get_work_item(item.item_id)
            if current is not None and current.status.is_terminal:
                break
            await asyncio.sleep(0.05)
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(agent, timeout=10)
        return item

    item = asyncio.run(_scenario())

    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.error_message is None
    claimed_events = [
        event for event in repository.list_events(item.item_id) if event.event_type == EVENT_CLAIMED
    ]
    assert len(claimed_events) == 1
    assert service.summary.claimed == 1
    assert service.summary.completed == 1
    destination = repository.get_destination(DESTINATION_ID)
    assert destination is not None
    assert destination.status == DestinationStatus.OFFLINE.value
    assert repository.count_heartbeats(DESTINATION_ID) >= 1


def test_redetected_item_is_a_noop_while_executing(
    repository: ExecutionRepository,
    gateway: SqlGateway,
    settings: Settings,
) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    runner = _BlockingRunner()
    service = AgentService(gateway, settings, runner=runner)

    async def _dispatch():
        first, second = await asyncio.gather(
            service.handle_candidate(item, DetectionChannel.PUSH),
            service.handle_candidate(item, DetectionChannel.POLL),
        )
        third = await service.handle_candidate(item, DetectionChannel.POLL)
        executing = service.is_executing(item.item_id)
        runner.release.set()
        await service.wait_idle()
        return first, second, third, executing

    first, second, third, executing = asyncio.run(_dispatch())

    assert first is not None
    assert first.claimed
    assert second is None
    assert third is None
    assert executing is True
    assert runner.runs == [item.item_id]
    assert service.is_executing(item.item_id) is False


def test_capacity_cap_leaves_items_for_later(
    repository: ExecutionRepository,
    gateway: SqlGateway,
    settings: Settings,
) -> None:
    task = make_task(repository)
    first_item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    second_item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    capped = replace(settings, execution=replace(settings.execution, max_concurrent_items=1))
    runner = _BlockingRunner()
    service = AgentService(gateway, capped, runner=runner)

    async def _dispatch():
        first = await service.handle_candidate(first_item, DetectionChannel.POLL)
        second = await service.handle_candidate(second_item, DetectionChannel.POLL)
        load = service.load()
        runner.release.set()
        await service.wait_idle()
        return first, second, load

    first, second, load = asyncio.run(_dispatch())

    assert first is not None and first.claimed
    assert second is None
    assert load == (1, 0)
    assert repository.get_work_item(second_item.item_id).status is ExecutionStatus.PENDING


def test_crashing_runner_marks_item_failed(
    repository: ExecutionRepository,
    gateway: SqlGateway,
    settings: Settings,
) -> None:
    class _CrashingRunner:
        async def run(self, item: WorkItem) -> ExecutionOutcome:
            raise KeyError("boom")

    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    service = AgentService(gateway, settings, runner=_CrashingRunner())

    async def _dispatch():
        await service.handle_candidate(item, DetectionChannel.POLL)
        await service.wait_idle()

    asyncio.run(_dispatch())

    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.FAILED
    assert "boom" in (stored.error_message or "")
    assert service.summary.failed == 1


def test_presence_reports_busy_at_capacity(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    load = [(2, 0)]
    presence = PresenceReporter(
        gateway,
        destination_id=DESTINATION_ID,
        load=lambda: load[0],
        capacity=2,
    )

    async def _beats():
        online = await presence.go_online()
        busy = await presence.beat()
        load[0] = (1, 1)
        idle = await presence.beat()
        return online, busy, idle

    online, busy, idle = asyncio.run(_beats())

    assert online is True
    assert busy is DestinationStatus.BUSY
    assert idle is DestinationStatus.ONLINE
    assert repository.count_heartbeats(DESTINATION_ID) == 2

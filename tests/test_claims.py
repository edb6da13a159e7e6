from __future__ import annotations

import asyncio

import allure

from conftest import DESTINATION_ID, ORGANIZATION_ID, make_task
from exec_agent.agent.claims import ClaimCoordinator, SeenSet
from exec_agent.agent.models import (
    ClaimOutcome,
    DetectionChannel,
    ExecutionStatus,
    TaskRecord,
    WorkItem,
    WorkItemCreate,
)
from exec_agent.gateway.base import GatewayError
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.repository import EVENT_CLAIMED, ExecutionRepository

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Claim Coordination"),
]


def _coordinator(gateway, destination_id: str = DESTINATION_ID, **kwargs) -> ClaimCoordinator:
    kwargs.setdefault("seen_ttl_seconds", 0)
    return ClaimCoordinator(
        gateway,
        destination_id=destination_id,
        organization_id=ORGANIZATION_ID,
        **kwargs,
    )


def test_at_most_one_destination_claims_an_item(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    coordinators = [_coordinator(gateway, f"dest-{index}") for index in range(8)]

    async def _race():
        return await asyncio.gather(
            *(coordinator.try_claim(item, channel=DetectionChannel.POLL) for coordinator in coordinators),
        )

    results = asyncio.run(_race())

    outcomes = [result.outcome for result in results]
    assert outcomes.count(ClaimOutcome.CLAIMED) == 1
    assert outcomes.count(ClaimOutcome.ALREADY_CLAIMED) == 7
    winner = next(result for result in results if result.claimed)
    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.CLAIMED
    assert stored.destination_id == winner.attempt.destination_id
    assert stored.claimed_at is not None
    events = [event for event in repository.list_events(item.item_id) if event.event_type == EVENT_CLAIMED]
    assert len(events) == 1


def test_same_item_from_push_and_poll_is_claimed_once(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    coordinator = _coordinator(gateway)

    async def _both_channels():
        return await asyncio.gather(
            coordinator.try_claim(item, channel=DetectionChannel.PUSH),
            coordinator.try_claim(item, channel=DetectionChannel.POLL),
        )

    push, poll = asyncio.run(_both_channels())

    assert sorted([push.outcome.value, poll.outcome.value]) == ["already_claimed", "claimed"]


def test_item_assigned_to_another_destination_is_rejected(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id, destination_id="dest-z"))

    result = asyncio.run(_coordinator(gateway).try_claim(item, channel=DetectionChannel.PUSH))

    assert result.outcome is ClaimOutcome.REJECTED
    assert repository.get_work_item(item.item_id).status is ExecutionStatus.PENDING


def test_task_from_another_organization_is_rejected(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, organization_id="org-other")
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))

    result = asyncio.run(_coordinator(gateway).try_claim(item, channel=DetectionChannel.POLL))

    assert result.outcome is ClaimOutcome.REJECTED
    assert "org-other" in (result.reason or "")
    assert repository.get_work_item(item.item_id).claimed_at is None


def test_disallowed_task_type_is_rejected(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, task_type="batch", configuration={"batch_command": "true"})
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    coordinator = _coordinator(gateway, allowed_task_types=("single",))

    result = asyncio.run(coordinator.try_claim(item, channel=DetectionChannel.POLL))

    assert result.outcome is ClaimOutcome.REJECTED


class _DeletingGateway(SqlGateway):
    """Deletes the task right after authorization reads it."""

    async def get_task(self, task_id: str) -> TaskRecord | None:
        task = await super().get_task(task_id)
        self.repository.delete_task(task_id)
        return task


def test_claim_racing_with_deletion_is_already_claimed(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    gateway = _DeletingGateway(repository)

    result = asyncio.run(_coordinator(gateway).try_claim(item, channel=DetectionChannel.PUSH))

    assert result.outcome is ClaimOutcome.ALREADY_CLAIMED
    assert repository.get_work_item(item.item_id) is None


class _BrokenGateway:
    async def get_task(self, task_id: str):
        raise GatewayError("connection reset", transient=True)


def test_backend_failure_is_an_error_outcome() -> None:
    coordinator = _coordinator(_BrokenGateway())

    item = WorkItem(item_id="w1", task_id="t1", status=ExecutionStatus.PENDING)
    result = asyncio.run(coordinator.try_claim(item, channel=DetectionChannel.POLL))

    assert result.outcome is ClaimOutcome.ERROR
    assert "connection reset" in (result.reason or "")


def test_seen_set_skips_recent_attempts(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    coordinator = _coordinator(gateway, seen_ttl_seconds=60)

    async def _twice():
        first = await coordinator.try_claim(item, channel=DetectionChannel.PUSH)
        second = await coordinator.try_claim(item, channel=DetectionChannel.POLL)
        return first, second

    first, second = asyncio.run(_twice())

    assert first.claimed
    assert second.outcome is ClaimOutcome.ALREADY_CLAIMED
    assert second.reason == "recently attempted"


def test_seen_set_expires_entries() -> None:
    now = [0.0]
    seen = SeenSet(10, clock=lambda: now[0])

    assert seen.check_and_add("a") is False
    assert seen.check_and_add("a") is True
    now[0] = 10.5
    assert seen.check_and_add("a") is False
    assert len(seen) == 1

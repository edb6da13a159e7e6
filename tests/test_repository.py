from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from conftest import DESTINATION_ID, make_task
from exec_agent.agent.models import ExecutionStatus, WorkItemCreate
from exec_agent.gateway.base import CHANGE_INSERT, CHANGE_UPDATE
from exec_agent.storage.repository import (
    EVENT_CLAIMED,
    EVENT_INSERTED,
    EVENT_STATUS_CHANGED,
    ExecutionRepository,
    ScheduleCreate,
)

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Execution Repository"),
]


def test_claim_then_owner_update_records_history(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))

    claimed = repository.claim_work_item(
        item_id=item.item_id,
        destination_id=DESTINATION_ID,
        claimed_at=datetime.now(tz=UTC),
    )
    assert claimed is not None
    assert claimed.claimed_at is not None
    assert repository.update_work_item(
        item.item_id,
        {"status": ExecutionStatus.RUNNING},
        destination_id="dest-other",
    ) is False
    assert repository.update_work_item(
        item.item_id,
        {"status": ExecutionStatus.FAILED, "error_message": "exit 2"},
        destination_id=DESTINATION_ID,
    ) is True

    events = repository.list_events(item.item_id)
    assert [event.event_type for event in events] == [
        EVENT_INSERTED,
        EVENT_CLAIMED,
        EVENT_STATUS_CHANGED,
    ]
    assert events[-1].status_from == "claimed"
    assert events[-1].status_to == "failed"
    assert events[-1].details == {"error_message": "exit 2"}


def test_second_claim_loses(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    now = datetime.now(tz=UTC)

    first = repository.claim_work_item(item_id=item.item_id, destination_id=DESTINATION_ID, claimed_at=now)
    second = repository.claim_work_item(item_id=item.item_id, destination_id="dest-b", claimed_at=now)

    assert first is not None
    assert second is None
    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.destination_id == DESTINATION_ID


def test_item_assigned_elsewhere_cannot_be_claimed(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id, destination_id="dest-b"))

    claimed = repository.claim_work_item(
        item_id=item.item_id,
        destination_id=DESTINATION_ID,
        claimed_at=datetime.now(tz=UTC),
    )

    assert claimed is None


def test_update_rejects_unknown_fields(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id, destination_id=DESTINATION_ID))

    with pytest.raises(ValueError, match="claimed_at"):
        repository.update_work_item(item.item_id, {"claimed_at": None}, destination_id=DESTINATION_ID)


def test_change_feed_reads_after_cursor(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    cursor = repository.latest_change_seq()
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    repository.claim_work_item(
        item_id=item.item_id,
        destination_id=DESTINATION_ID,
        claimed_at=datetime.now(tz=UTC),
    )

    changes = repository.read_changes(after_seq=cursor)

    assert [(change.kind, change.item.item_id) for change in changes] == [
        (CHANGE_INSERT, item.item_id),
        (CHANGE_UPDATE, item.item_id),
    ]
    assert repository.read_changes(after_seq=changes[-1].seq) == []


def test_deleting_task_cascades(repository: ExecutionRepository) -> None:
    task = make_task(repository)
    item = repository.insert_work_item(WorkItemCreate(task_id=task.task_id))
    schedule = repository.create_schedule(
        ScheduleCreate(task_id=task.task_id, schedule_type="once", next_run_at=datetime.now(tz=UTC)),
    )

    assert repository.delete_task(task.task_id) is True

    assert repository.get_work_item(item.item_id) is None
    assert repository.get_schedule(schedule.schedule_id) is None
    assert repository.delete_task(task.task_id) is False

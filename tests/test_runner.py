from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import allure

from conftest import DESTINATION_ID, make_task
from exec_agent.agent.models import ExecutionStatus, WorkItem, WorkItemCreate
from exec_agent.agent.runner import ExecutionRunner, find_alert_lines
from exec_agent.agent.status import StatusReporter
from exec_agent.agent.task_specs import CommandSpec
from exec_agent.agent.terminal import TerminalSpawnError
from exec_agent.config import ExecutionSettings
from exec_agent.gateway.sql_gateway import SqlGateway
from exec_agent.storage.repository import ExecutionRepository

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Execution Runner"),
]


def _claimed_item(repository: ExecutionRepository, task_id: str, input_params=None) -> WorkItem:
    item = repository.insert_work_item(
        WorkItemCreate(task_id=task_id, input_params=input_params or {}),
    )
    claimed = repository.claim_work_item(
        item_id=item.item_id,
        destination_id=DESTINATION_ID,
        claimed_at=datetime.now(tz=UTC),
    )
    assert claimed is not None
    return claimed


def _runner(gateway: SqlGateway, **kwargs) -> ExecutionRunner:
    return ExecutionRunner(
        gateway,
        StatusReporter(gateway, DESTINATION_ID),
        ExecutionSettings(echo_output=False),
        **kwargs,
    )


def test_single_command_completes_with_output(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, configuration={"command": "echo hello"})
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.status is ExecutionStatus.COMPLETED
    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.output_result is not None
    assert stored.output_result["task_type"] == "single"
    assert stored.output_result["results"][0]["stdout"] == "hello\n"
    assert stored.started_at is not None
    assert stored.completed_at is not None
    assert stored.duration_ms is not None
    events = [(event.status_from, event.status_to) for event in repository.list_events(item.item_id)]
    assert events[-2:] == [("claimed", "running"), ("running", "completed")]


def test_workflow_stops_at_first_failing_step(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(
        repository,
        task_type="workflow",
        workflow=[
            {"name": "ok", "command": "echo one"},
            {"name": "fail", "command": "echo two; exit 2"},
            {"name": "never", "command": "echo three"},
        ],
    )
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.status is ExecutionStatus.FAILED
    results = outcome.output_result["results"]
    assert [result["name"] for result in results] == ["ok", "fail"]
    assert [result["exit_code"] for result in results] == [0, 2]
    assert outcome.output_result["steps_total"] == 3
    assert outcome.output_result["steps_completed"] == 1
    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.FAILED
    assert "fail exited with code 2" in (stored.error_message or "")


def test_batch_runs_every_item_and_fails_when_any_fails(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(
        repository,
        task_type="batch",
        configuration={"batch_command": "test {{index}} -ne 2", "batch_size": 3},
    )
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.status is ExecutionStatus.FAILED
    assert outcome.output_result["succeeded"] == 2
    assert outcome.output_result["failed"] == 1
    assert [result["command"] for result in outcome.output_result["results"]] == [
        "test 1 -ne 2",
        "test 2 -ne 2",
        "test 3 -ne 2",
    ]


def test_monitoring_counts_alert_lines(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(
        repository,
        task_type="monitoring",
        configuration={"monitor_command": "printf 'ERROR disk\\nok\\nlogin failed\\n'"},
    )
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.status is ExecutionStatus.COMPLETED
    assert outcome.output_result["alerts_triggered"] == 2
    assert outcome.output_result["alerts"] == ["ERROR disk", "login failed"]


def test_report_output_is_the_command_stdout(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, task_type="report", configuration={"report_command": "echo 42%"})
    item = _claimed_item(repository, task.task_id, {"report_type": "disk"})

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.output_result["report"] == "42%\n"
    assert outcome.output_result["report_type"] == "disk"


def test_undecodable_task_fails_without_running(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, task_type="workflow", configuration={"unused": True})
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway).run(item))

    assert outcome.status is ExecutionStatus.FAILED
    stored = repository.get_work_item(item.item_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.FAILED
    assert "no steps" in (stored.error_message or "")


class _NoTerminal:
    async def launch(self, spec: CommandSpec):
        raise TerminalSpawnError("No supported terminal emulator found")


def test_terminal_launch_failure_marks_item_failed(
    repository: ExecutionRepository,
    gateway: SqlGateway,
) -> None:
    task = make_task(repository, configuration={"command": "vim notes.txt", "open_in_new_terminal": True})
    item = _claimed_item(repository, task.task_id)

    outcome = asyncio.run(_runner(gateway, terminal=_NoTerminal()).run(item))

    assert outcome.status is ExecutionStatus.FAILED
    assert outcome.error_message == "No supported terminal emulator found"


def test_find_alert_lines_is_case_insensitive() -> None:
    assert find_alert_lines("Fail\nfine\nAn error", ("error", "FAIL")) == ["Fail", "An error"]

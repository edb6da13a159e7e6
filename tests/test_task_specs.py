from __future__ import annotations

import allure
import pytest

from exec_agent.agent.models import TaskRecord
from exec_agent.agent.task_specs import (
    BatchTask,
    CustomTask,
    MonitoringTask,
    PlanDefaults,
    ReportTask,
    SingleTask,
    TaskSpecError,
    WorkflowTask,
    decode_task_plan,
    is_interactive_command,
    parse_auto_responses,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Task Plans"),
]


def _task(task_type: str, configuration: dict | None = None, workflow: list | None = None) -> TaskRecord:
    return TaskRecord(
        task_id="t1",
        organization_id="org",
        name="task",
        task_type=task_type,
        configuration=configuration or {},
        workflow=workflow or [],
    )


def test_single_prefers_input_command_over_configuration() -> None:
    plan = decode_task_plan(_task("single", {"command": "echo config"}), {"command": "echo input"})

    assert isinstance(plan, SingleTask)
    assert plan.command.command == "echo input"
    assert plan.command.interactive is False


def test_missing_command_is_a_spec_error() -> None:
    with pytest.raises(TaskSpecError, match="No command configured"):
        decode_task_plan(_task("single"), {})


def test_unknown_task_type_decodes_as_custom() -> None:
    plan = decode_task_plan(_task("deploy", {"custom_command": "make deploy"}), {})

    assert isinstance(plan, CustomTask)
    assert plan.command.command == "make deploy"


def test_workflow_steps_resolve_commands_in_order() -> None:
    task = _task(
        "workflow",
        workflow=[
            {"name": "build", "command": "make"},
            {"name": "test", "params": {"command": "make test"}},
            {"name": "ship"},
        ],
    )

    plan = decode_task_plan(task, {"step3_command": "make ship"})

    assert isinstance(plan, WorkflowTask)
    assert [step.name for step in plan.steps] == ["build", "test", "ship"]
    assert [step.command.command for step in plan.steps] == ["make", "make test", "make ship"]


def test_workflow_from_input_params_replaces_task_workflow() -> None:
    task = _task("workflow", workflow=[{"command": "false"}])

    plan = decode_task_plan(task, {"workflow": [{"command": "true"}]})

    assert isinstance(plan, WorkflowTask)
    assert [step.command.command for step in plan.steps] == ["true"]


def test_workflow_step_without_command_is_rejected() -> None:
    with pytest.raises(TaskSpecError, match="step 1 has no command"):
        decode_task_plan(_task("workflow", workflow=[{"name": "empty"}]), {})


def test_batch_respects_configured_limit() -> None:
    task = _task("batch", {"batch_command": "echo {{index}}", "batch_size": 4})

    plan = decode_task_plan(task, {})

    assert isinstance(plan, BatchTask)
    assert plan.count == 4
    assert plan.command_for(2) == "echo 2"
    with pytest.raises(TaskSpecError, match="exceeds"):
        decode_task_plan(task, {}, defaults=PlanDefaults(batch_max_items=3))
    with pytest.raises(TaskSpecError, match="positive"):
        decode_task_plan(task, {"batch_size": 0})


def test_report_and_monitoring_use_their_own_command_keys() -> None:
    report = decode_task_plan(_task("report", {"report_command": "df -h", "report_type": "disk"}), {})
    monitor = decode_task_plan(
        _task("monitoring", {"monitor_command": "tail log", "alertKeywords": ["PANIC"]}),
        {},
    )

    assert isinstance(report, ReportTask)
    assert report.command.command == "df -h"
    assert report.report_type == "disk"
    assert isinstance(monitor, MonitoringTask)
    assert monitor.alert_keywords == ("panic",)


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("claude --continue", True),
        ("ssh host", True),
        ("python3", True),
        ("python3 script.py", False),
        ("docker run -it ubuntu bash", True),
        ("git rebase -i HEAD~3", True),
        ("npm init", True),
        ("ls -la", False),
        ("bash deploy.sh", False),
    ],
)
def test_interactive_command_signatures(command: str, expected: bool) -> None:
    assert is_interactive_command(command) is expected


def test_execution_mode_and_separate_terminal_flags() -> None:
    plan = decode_task_plan(
        _task("single", {"command": "make", "execution_mode": "interactive"}),
        {"separateTerminal": True, "keepTerminalOpen": True},
    )

    assert isinstance(plan, SingleTask)
    assert plan.command.interactive is True
    assert plan.command.separate_terminal is True
    assert plan.command.keep_terminal_open is True


def test_separate_terminal_is_ignored_for_non_interactive_commands() -> None:
    plan = decode_task_plan(_task("single", {"command": "ls", "separate_terminal": True}), {})

    assert isinstance(plan, SingleTask)
    assert plan.command.separate_terminal is False


def test_parse_auto_responses_reads_both_delay_units() -> None:
    rules = parse_auto_responses(
        [
            {"input": "yes", "trigger": "Proceed\\?", "delay": 250},
            {"input": "q", "delay_seconds": 1.5, "closeAfter": True},
            {"immediate": True},
        ],
    )

    assert rules[0].trigger is not None
    assert rules[0].delay_seconds == 0.25
    assert rules[1].delay_seconds == 1.5
    assert rules[1].close_after is True
    assert rules[2].immediate is True
    assert rules[2].payload == b"\n"
    assert rules[0].payload == b"yes\n"


def test_parse_auto_responses_rejects_bad_trigger() -> None:
    with pytest.raises(TaskSpecError, match="invalid trigger"):
        parse_auto_responses([{"trigger": "(unclosed"}])


def test_auto_responses_from_input_win_over_configuration() -> None:
    task = _task("single", {"command": "claude", "auto_responses": [{"input": "config"}]})

    plan = decode_task_plan(task, {"autoResponses": [{"input": "input"}]})

    assert isinstance(plan, SingleTask)
    assert [rule.input for rule in plan.command.auto_responses] == ["input"]


def test_auto_continue_and_claude_presets() -> None:
    continued = decode_task_plan(
        _task("single", {"command": "claude", "auto_continue": True, "auto_continue_delay": 500}),
        {},
    )
    claude = decode_task_plan(
        _task("single", {"command": "claude -p hi", "autoClaudeResponses": True}),
        {},
    )

    assert isinstance(continued, SingleTask)
    assert [(rule.input, rule.delay_seconds) for rule in continued.command.auto_responses] == [
        ("continue", 0.5),
    ]
    assert isinstance(claude, SingleTask)
    assert [rule.input for rule in claude.command.auto_responses] == ["yes", "\n", "continue"]

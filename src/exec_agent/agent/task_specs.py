"""Decode task definitions into a closed set of executable plans.

A task row carries loosely structured JSON (``configuration``, ``workflow``)
and each work item carries ``input_params``. Both accept snake_case keys and
the camelCase spelling used by existing task definitions. Values from
``input_params`` take precedence over the task configuration.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from exec_agent.agent.models import AutoResponseRule, TaskRecord, TaskType

DEFAULT_ALERT_KEYWORDS = ("error", "fail")
INDEX_PLACEHOLDER = "{{index}}"
CLAUDE_PROMPT_TRIGGER = "Would you like to|Do you want to|Shall I"
CLAUDE_CONTINUE_TRIGGER = r"Press enter to continue|Continue\?"

_INTERACTIVE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^claude\b",
        r"^ssh\b",
        r"^telnet\b",
        r"^s?ftp\b",
        r"^vim?\b",
        r"^nano\b",
        r"^emacs\b",
        r"^less\b",
        r"^more\b",
        r"^h?top\b",
        r"^watch\b",
        r"^screen\b",
        r"^tmux\b",
        r"^python3?\b(?!\s+\S+\.py)",
        r"^node\b(?!\s+\S+\.js)",
        r"^irb\b",
        r"^pry\b",
        r"^mysql\b",
        r"^psql\b",
        r"^redis-cli\b",
        r"^mongo\b",
        r"^sqlite3\b",
        r"^(ba|z)?sh\b(?!\s+\S+\.sh)",
        r"docker\s+(exec|run)\s+.*-it",
        r"(npm|yarn)\s+init\b",
        r"git\s+rebase\s+-i",
    )
)


class TaskSpecError(ValueError):
    """Task definition or input parameters cannot be turned into a plan."""


@dataclass(frozen=True, slots=True)
class PlanDefaults:
    auto_continue_delay_seconds: float = 15.0
    batch_max_items: int = 100
    terminal_app: str = ""
    keep_terminal_open: bool = False


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """One shell command plus how it must be driven."""

    command: str
    interactive: bool = False
    separate_terminal: bool = False
    terminal_app: str = ""
    keep_terminal_open: bool = False
    auto_responses: tuple[AutoResponseRule, ...] = ()


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    name: str
    command: CommandSpec


@dataclass(frozen=True, slots=True)
class SingleTask:
    command: CommandSpec


@dataclass(frozen=True, slots=True)
class WorkflowTask:
    steps: tuple[WorkflowStep, ...]


@dataclass(frozen=True, slots=True)
class BatchTask:
    command_template: str
    count: int

    def command_for(self, index: int) -> str:
        return self.command_template.replace(INDEX_PLACEHOLDER, str(index))


@dataclass(frozen=True, slots=True)
class ReportTask:
    command: CommandSpec
    report_type: str = "summary"


@dataclass(frozen=True, slots=True)
class MonitoringTask:
    command: CommandSpec
    alert_keywords: tuple[str, ...] = DEFAULT_ALERT_KEYWORDS


@dataclass(frozen=True, slots=True)
class CustomTask:
    command: CommandSpec
    configuration: dict[str, Any] = field(default_factory=dict)


TaskPlan = SingleTask | WorkflowTask | BatchTask | ReportTask | MonitoringTask | CustomTask


def is_interactive_command(command: str) -> bool:
    """Whether a command is known to expect a live terminal."""

    stripped = command.strip()
    return any(pattern.search(stripped) for pattern in _INTERACTIVE_PATTERNS)


def decode_task_plan(
    task: TaskRecord,
    input_params: Mapping[str, Any],
    *,
    defaults: PlanDefaults | None = None,
) -> TaskPlan:
    """Turn a task row and work item parameters into one executable plan."""

    defaults = defaults or PlanDefaults()
    try:
        task_type = TaskType(task.task_type)
    except ValueError:
        task_type = TaskType.CUSTOM
    sources = (input_params, task.configuration)

    if task_type is TaskType.SINGLE:
        return SingleTask(command=_command_spec(sources, ("command",), defaults))
    if task_type is TaskType.WORKFLOW:
        return _decode_workflow(task, input_params, defaults)
    if task_type is TaskType.BATCH:
        return _decode_batch(sources, defaults)
    if task_type is TaskType.REPORT:
        return ReportTask(
            command=_command_spec(sources, ("report_command", "command"), defaults),
            report_type=str(_lookup(sources, "report_type", "reportType") or "summary"),
        )
    if task_type is TaskType.MONITORING:
        keywords = _lookup(sources, "alert_keywords", "alertKeywords")
        return MonitoringTask(
            command=_command_spec(sources, ("monitor_command", "command"), defaults),
            alert_keywords=tuple(str(word).lower() for word in keywords)
            if isinstance(keywords, list) and keywords
            else DEFAULT_ALERT_KEYWORDS,
        )
    return CustomTask(
        command=_command_spec(sources, ("custom_command", "command"), defaults),
        configuration=dict(task.configuration),
    )


def parse_auto_responses(raw: Any) -> tuple[AutoResponseRule, ...]:
    """Compile auto-response rules.

    ``delay`` is read in milliseconds, ``delay_seconds`` in seconds.
    """

    if not isinstance(raw, list):
        raise TaskSpecError("autoResponses must be a list of rule objects.")
    rules: list[AutoResponseRule] = []
    for position, entry in enumerate(raw, start=1):
        if not isinstance(entry, Mapping):
            raise TaskSpecError(f"Auto-response rule {position} must be an object.")
        trigger_source = entry.get("trigger")
        trigger = None
        if trigger_source:
            try:
                trigger = re.compile(str(trigger_source))
            except re.error as error:
                raise TaskSpecError(
                    f"Auto-response rule {position} has invalid trigger {trigger_source!r}: {error}",
                ) from error
        rules.append(
            AutoResponseRule(
                input=str(entry.get("input") or "\n"),
                trigger=trigger,
                delay_seconds=_rule_delay_seconds(entry, position),
                immediate=bool(entry.get("immediate", False)),
                close_after=bool(_first(entry, "close_after", "closeAfter") or False),
            ),
        )
    return tuple(rules)


def _decode_workflow(
    task: TaskRecord,
    input_params: Mapping[str, Any],
    defaults: PlanDefaults,
) -> WorkflowTask:
    raw_steps: Any = task.workflow or task.configuration.get("workflow") or []
    if isinstance(input_params.get("workflow"), list):
        raw_steps = input_params["workflow"]
    if not isinstance(raw_steps, list):
        raise TaskSpecError("Workflow steps must be a list.")

    if not raw_steps:
        command = input_params.get("command")
        if not command:
            raise TaskSpecError(f"Workflow task {task.task_id} has no steps and no command.")
        sources = (input_params, task.configuration)
        return WorkflowTask(
            steps=(WorkflowStep(name="step 1", command=_command_spec(sources, ("command",), defaults)),),
        )

    steps: list[WorkflowStep] = []
    for index, raw_step in enumerate(raw_steps, start=1):
        if not isinstance(raw_step, Mapping):
            raise TaskSpecError(f"Workflow step {index} must be an object.")
        params = raw_step.get("params")
        step_sources: tuple[Mapping[str, Any], ...] = (
            raw_step,
            params if isinstance(params, Mapping) else {},
        )
        command = _lookup(step_sources, "command") or input_params.get(f"step{index}_command")
        if not command:
            raise TaskSpecError(f"Workflow step {index} has no command.")
        steps.append(
            WorkflowStep(
                name=str(raw_step.get("name") or f"step {index}"),
                command=_build_command_spec(str(command), step_sources, defaults),
            ),
        )
    return WorkflowTask(steps=tuple(steps))


def _decode_batch(sources: tuple[Mapping[str, Any], ...], defaults: PlanDefaults) -> BatchTask:
    template = _lookup(sources, "batch_command", "batchCommand", "command")
    if not template:
        raise TaskSpecError("Batch task requires batch_command.")
    raw_count = _lookup(sources, "batch_size", "batchSize")
    try:
        count = int(raw_count) if raw_count is not None else 3
    except (TypeError, ValueError) as error:
        raise TaskSpecError(f"Invalid batch_size: {raw_count!r}") from error
    if count <= 0:
        raise TaskSpecError(f"batch_size must be positive: {count}")
    if count > defaults.batch_max_items:
        raise TaskSpecError(
            f"batch_size {count} exceeds the configured limit of {defaults.batch_max_items}",
        )
    return BatchTask(command_template=str(template), count=count)


def _command_spec(
    sources: tuple[Mapping[str, Any], ...],
    command_keys: tuple[str, ...],
    defaults: PlanDefaults,
) -> CommandSpec:
    command = _lookup(sources, *command_keys)
    if not command:
        raise TaskSpecError(f"No command configured (looked for {', '.join(command_keys)}).")
    return _build_command_spec(str(command), sources, defaults)


def _build_command_spec(
    command: str,
    sources: tuple[Mapping[str, Any], ...],
    defaults: PlanDefaults,
) -> CommandSpec:
    interactive = (
        bool(_lookup(sources, "interactive"))
        or _lookup(sources, "execution_mode", "executionMode") == "interactive"
        or is_interactive_command(command)
    )
    separate_terminal = bool(_lookup(sources, "open_in_new_terminal", "openInNewTerminal")) or (
        interactive and bool(_lookup(sources, "separate_terminal", "separateTerminal"))
    )
    keep_open = _lookup(sources, "keep_terminal_open", "keepTerminalOpen")
    return CommandSpec(
        command=command,
        interactive=interactive,
        separate_terminal=separate_terminal,
        terminal_app=str(_lookup(sources, "terminal_app", "terminalApp") or defaults.terminal_app),
        keep_terminal_open=defaults.keep_terminal_open if keep_open is None else bool(keep_open),
        auto_responses=_resolve_auto_responses(command, sources, defaults),
    )


def _resolve_auto_responses(
    command: str,
    sources: tuple[Mapping[str, Any], ...],
    defaults: PlanDefaults,
) -> tuple[AutoResponseRule, ...]:
    for source in sources:
        raw = _first(source, "auto_responses", "autoResponses")
        if isinstance(raw, list):
            return parse_auto_responses(raw)

    if _lookup(sources, "auto_continue", "autoContinue"):
        raw_delay = _lookup(sources, "auto_continue_delay", "autoContinueDelay")
        delay_seconds = (
            _milliseconds(raw_delay, "autoContinueDelay")
            if raw_delay is not None
            else defaults.auto_continue_delay_seconds
        )
        return (
            AutoResponseRule(
                input=str(_lookup(sources, "auto_continue_input", "autoContinueInput") or "continue"),
                delay_seconds=delay_seconds,
            ),
        )

    if command.strip().lower().startswith("claude") and _lookup(
        sources,
        "auto_claude_responses",
        "autoClaudeResponses",
    ):
        return (
            AutoResponseRule(input="yes", trigger=re.compile(CLAUDE_PROMPT_TRIGGER), delay_seconds=2.0),
            AutoResponseRule(input="\n", trigger=re.compile(CLAUDE_CONTINUE_TRIGGER), delay_seconds=1.0),
            AutoResponseRule(input="continue", delay_seconds=defaults.auto_continue_delay_seconds),
        )
    return ()


def _rule_delay_seconds(entry: Mapping[str, Any], position: int) -> float:
    if entry.get("delay_seconds") is not None:
        try:
            value = float(entry["delay_seconds"])
        except (TypeError, ValueError) as error:
            raise TaskSpecError(f"Auto-response rule {position} has invalid delay_seconds.") from error
        if value < 0:
            raise TaskSpecError(f"Auto-response rule {position} has negative delay.")
        return value
    if entry.get("delay") is not None:
        return _milliseconds(entry["delay"], f"rule {position} delay")
    return 0.0


def _milliseconds(value: Any, label: str) -> float:
    try:
        millis = float(value)
    except (TypeError, ValueError) as error:
        raise TaskSpecError(f"Invalid {label}: {value!r}") from error
    if millis < 0:
        raise TaskSpecError(f"Invalid {label}: {value!r}")
    return millis / 1000.0


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _lookup(sources: tuple[Mapping[str, Any], ...], *keys: str) -> Any:
    for source in sources:
        value = _first(source, *keys)
        if value is not None and value != "":
            return value
    return None

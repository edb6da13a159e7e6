"""Run one claimed work item to completion."""

from __future__ import annotations

import logging
from typing import Any

from exec_agent.agent.interactive import InteractiveAutomationEngine
from exec_agent.agent.models import (
    ExecutionOutcome,
    ExecutionStatus,
    StepResult,
    TaskType,
    WorkItem,
)
from exec_agent.agent.process import ProcessSpawnError, console_echo, run_captured
from exec_agent.agent.status import StatusReporter
from exec_agent.agent.task_specs import (
    BatchTask,
    CommandSpec,
    CustomTask,
    MonitoringTask,
    PlanDefaults,
    ReportTask,
    SingleTask,
    TaskPlan,
    TaskSpecError,
    WorkflowTask,
    decode_task_plan,
)
from exec_agent.agent.terminal import TerminalSpawner, TerminalSpawnError
from exec_agent.config import ExecutionSettings
from exec_agent.gateway.base import BackendGateway, GatewayError

logger = logging.getLogger(__name__)

MAX_ALERT_LINES = 20


class ExecutionRunner:
    """Decode, execute and report a claimed work item."""

    def __init__(
        self,
        gateway: BackendGateway,
        reporter: StatusReporter,
        settings: ExecutionSettings | None = None,
        *,
        terminal: TerminalSpawner | None = None,
    ) -> None:
        self._gateway = gateway
        self._reporter = reporter
        self._settings = settings or ExecutionSettings()
        self._terminal = terminal or TerminalSpawner(
            terminal_command=self._settings.terminal_command,
            close_grace_seconds=self._settings.close_grace_seconds,
        )
        self._defaults = PlanDefaults(
            auto_continue_delay_seconds=self._settings.auto_continue_delay_seconds,
            batch_max_items=self._settings.batch_max_items,
            terminal_app=self._settings.terminal_app,
            keep_terminal_open=self._settings.keep_terminal_open,
        )
        self._echo = console_echo if self._settings.echo_output else None

    async def run(self, item: WorkItem) -> ExecutionOutcome:
        try:
            plan = await self._load_plan(item)
        except (GatewayError, TaskSpecError, LookupError) as error:
            return await self._finish(item, _failed(str(error)))

        await self._reporter.report(item.item_id, ExecutionStatus.RUNNING)
        logger.info("Running work item %s (%s)", item.item_id, type(plan).__name__)
        try:
            outcome = await self._execute(plan)
        except (ProcessSpawnError, TerminalSpawnError) as error:
            logger.error("Work item %s could not start: %s", item.item_id, error)
            outcome = _failed(str(error))
        return await self._finish(item, outcome)

    async def _load_plan(self, item: WorkItem) -> TaskPlan:
        task = await self._gateway.get_task(item.task_id)
        if task is None:
            raise LookupError(f"Task {item.task_id} not found")
        return decode_task_plan(task, item.input_params, defaults=self._defaults)

    async def _finish(self, item: WorkItem, outcome: ExecutionOutcome) -> ExecutionOutcome:
        patch: dict[str, Any] = {"output_result": outcome.output_result}
        if outcome.error_message:
            patch["error_message"] = outcome.error_message
        await self._reporter.report(item.item_id, outcome.status, patch)
        logger.info("Work item %s finished: %s", item.item_id, outcome.status.value)
        return outcome

    async def _execute(self, plan: TaskPlan) -> ExecutionOutcome:
        if isinstance(plan, WorkflowTask):
            return await self._run_workflow(plan)
        if isinstance(plan, BatchTask):
            return await self._run_batch(plan)

        result = await self.run_command(plan.command, step=1, name="main")
        output: dict[str, Any] = {"results": [result.to_dict()]}
        if isinstance(plan, SingleTask):
            output["task_type"] = TaskType.SINGLE.value
        elif isinstance(plan, ReportTask):
            output.update(
                task_type=TaskType.REPORT.value,
                report_type=plan.report_type,
                report=result.stdout,
            )
        elif isinstance(plan, MonitoringTask):
            alerts = find_alert_lines(result.stdout + result.stderr, plan.alert_keywords)
            output.update(
                task_type=TaskType.MONITORING.value,
                alerts_triggered=len(alerts),
                alerts=alerts[:MAX_ALERT_LINES],
            )
        elif isinstance(plan, CustomTask):
            output["task_type"] = TaskType.CUSTOM.value
        return _from_results(output, [result])

    async def _run_workflow(self, plan: WorkflowTask) -> ExecutionOutcome:
        results: list[StepResult] = []
        for index, step in enumerate(plan.steps, start=1):
            result = await self.run_command(step.command, step=index, name=step.name)
            results.append(result)
            if not result.success:
                logger.info("Workflow stopped at step %d (%s)", index, step.name)
                break
        output = {
            "task_type": TaskType.WORKFLOW.value,
            "steps_total": len(plan.steps),
            "steps_completed": sum(1 for result in results if result.success),
            "results": [result.to_dict() for result in results],
        }
        return _from_results(output, results)

    async def _run_batch(self, plan: BatchTask) -> ExecutionOutcome:
        results: list[StepResult] = []
        for index in range(1, plan.count + 1):
            spec = CommandSpec(command=plan.command_for(index))
            results.append(await self.run_command(spec, step=index, name=f"item {index}"))
        succeeded = sum(1 for result in results if result.success)
        output = {
            "task_type": TaskType.BATCH.value,
            "batch_size": plan.count,
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": [result.to_dict() for result in results],
        }
        return _from_results(output, results)

    async def run_command(self, spec: CommandSpec, *, step: int, name: str) -> StepResult:
        """Route one command to a terminal window, the automation engine or plain capture."""

        if spec.separate_terminal:
            launch = await self._terminal.launch(spec)
            return StepResult(
                step=step,
                name=name,
                command=spec.command,
                exit_code=launch.exit_code,
                stdout=f"Opened in {launch.terminal_app}",
                warnings=launch.warnings,
            )
        if spec.interactive or spec.auto_responses:
            engine = InteractiveAutomationEngine(
                spec.auto_responses,
                bootstrap_seconds=self._settings.bootstrap_seconds,
                close_grace_seconds=self._settings.close_grace_seconds,
                echo=self._echo,
                max_output_chars=self._settings.max_output_chars,
            )
            result = await engine.run(spec.command)
        else:
            result = await run_captured(
                spec.command,
                echo=self._echo,
                max_output_chars=self._settings.max_output_chars,
            )
        return StepResult(
            step=step,
            name=name,
            command=spec.command,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            interrupted=result.interrupted,
            warnings=result.warnings,
        )


def find_alert_lines(text: str, keywords: tuple[str, ...]) -> list[str]:
    """Output lines mentioning any of ``keywords``, case-insensitive."""

    lowered = tuple(word.lower() for word in keywords)
    return [line for line in text.splitlines() if any(word in line.lower() for word in lowered)]


def _from_results(output: dict[str, Any], results: list[StepResult]) -> ExecutionOutcome:
    failed = next((result for result in results if not result.success), None)
    if failed is None:
        return ExecutionOutcome(status=ExecutionStatus.COMPLETED, output_result=output)
    return ExecutionOutcome(
        status=ExecutionStatus.FAILED,
        output_result=output,
        error_message=f"{failed.name} exited with code {failed.exit_code}: {failed.command}",
    )


def _failed(message: str) -> ExecutionOutcome:
    return ExecutionOutcome(
        status=ExecutionStatus.FAILED,
        output_result={"error": message},
        error_message=message,
    )

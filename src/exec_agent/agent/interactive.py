"""Drive an interactive child process with scripted auto-responses.

The engine owns one child process and a list of rules consumed strictly in
order. Output chunks, timer expirations and process exit all arrive on a
single event queue, so rule bookkeeping never runs concurrently with itself.

States::

    idle -> spawned -> (response_armed <-> response_fired)* -> draining -> closed

Only the rule at the current index is armed. Triggers only see output
produced after the previous rule fired, and an untriggered rule waits its
delay from that firing. Immediate rules get their timer at spawn; when one
fires, earlier unfired rules are skipped so a rule never fires after a later
one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from exec_agent.agent.models import AutoResponseRule, ProcessResult
from exec_agent.agent.process import (
    STDERR,
    STDOUT,
    OutputSink,
    is_interrupt_exit,
    normalize_exit_code,
    pump_stream,
    run_inherited,
    signal_process_group,
    spawn_shell,
    terminate_process,
    truncate_output,
)

logger = logging.getLogger(__name__)

IMMEDIATE_DEFAULT_DELAY_SECONDS = 0.1
READER_DRAIN_SECONDS = 1.0
INTERRUPT_ESCALATION_SECONDS = 5.0

TIMER_IMMEDIATE = "immediate"
TIMER_SEND = "send"
TIMER_BOOTSTRAP = "bootstrap"
TIMER_INTERRUPT = "interrupt"
TIMER_KILL = "kill"


class EngineState(str, Enum):
    IDLE = "idle"
    SPAWNED = "spawned"
    RESPONSE_ARMED = "response_armed"
    RESPONSE_FIRED = "response_fired"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    stream: str
    text: str


@dataclass(frozen=True, slots=True)
class TimerFired:
    kind: str
    rule_index: int = -1


@dataclass(frozen=True, slots=True)
class ProcessExited:
    returncode: int | None


EngineEvent = OutputChunk | TimerFired | ProcessExited


class InteractiveAutomationEngine:
    """Single-use driver for one interactive child process."""

    def __init__(
        self,
        rules: Sequence[AutoResponseRule],
        *,
        bootstrap_seconds: float = 2.0,
        close_grace_seconds: float = 1.0,
        echo: OutputSink | None = None,
        max_output_chars: int = 65_536,
    ) -> None:
        self.rules = tuple(rules)
        self.state = EngineState.IDLE
        self._bootstrap_seconds = bootstrap_seconds
        self._close_grace_seconds = close_grace_seconds
        self._echo = echo
        self._max_output_chars = max_output_chars

        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._process: asyncio.subprocess.Process | None = None
        self._timers: list[asyncio.TimerHandle] = []
        self._send_handle: asyncio.TimerHandle | None = None
        self._buffers = {STDOUT: "", STDERR: ""}
        self._scan_offsets = {STDOUT: 0, STDERR: 0}
        self._current = 0
        self._fired = 0
        self._skipped = 0
        self._has_output = False
        self._interrupt_sent = False
        self._returncode: int | None = None

    @property
    def fired_rules(self) -> int:
        return self._fired

    @property
    def skipped_rules(self) -> int:
        return self._skipped

    async def run(self, command: str) -> ProcessResult:
        """Spawn ``command`` and enforce the rule set until the child exits."""

        if self.state is not EngineState.IDLE:
            raise RuntimeError("InteractiveAutomationEngine instances are single-use.")

        if not self.rules:
            logger.info("No auto-responses configured, attaching %r to the terminal", command)
            self._transition(EngineState.SPAWNED)
            result = await run_inherited(command)
            self._transition(EngineState.CLOSED)
            return result

        process = await spawn_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._process = process
        self._transition(EngineState.SPAWNED)
        logger.info(
            "Started %r (pid %s) with %d auto-response(s)",
            command,
            process.pid,
            len(self.rules),
        )
        watcher = asyncio.create_task(self._watch(process))
        try:
            self._schedule_spawn_timers()
            self._arm_current()
            while self.state is not EngineState.CLOSED:
                await self._dispatch(await self._queue.get())
        except asyncio.CancelledError:
            await terminate_process(process)
            raise
        finally:
            self._cancel_timers()
            if not watcher.done():
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
        return self._result()

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        assert process.stderr is not None
        readers = [
            asyncio.create_task(pump_stream(process.stdout, STDOUT, self._enqueue_output)),
            asyncio.create_task(pump_stream(process.stderr, STDERR, self._enqueue_output)),
        ]
        try:
            returncode = await process.wait()
            await asyncio.wait(readers, timeout=READER_DRAIN_SECONDS)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()
        self._queue.put_nowait(ProcessExited(returncode))

    def _enqueue_output(self, stream: str, text: str) -> None:
        self._queue.put_nowait(OutputChunk(stream, text))

    async def _dispatch(self, event: EngineEvent) -> None:
        if isinstance(event, OutputChunk):
            await self._on_output(event)
        elif isinstance(event, TimerFired):
            await self._on_timer(event)
        else:
            self._returncode = event.returncode
            self._transition(EngineState.CLOSED)

    async def _on_output(self, chunk: OutputChunk) -> None:
        self._has_output = True
        self._buffers[chunk.stream] += chunk.text
        if self._echo is not None:
            self._echo(chunk.stream, chunk.text)

        if self.state is not EngineState.RESPONSE_ARMED or self._send_handle is not None:
            return
        rule = self.rules[self._current]
        if rule.immediate:
            return
        if rule.trigger is not None:
            self._scan_for_trigger(self._current)

    async def _on_timer(self, event: TimerFired) -> None:
        if event.kind == TIMER_INTERRUPT:
            self._send_interrupt()
            return
        if event.kind == TIMER_KILL:
            assert self._process is not None
            if signal_process_group(self._process, signal.SIGKILL):
                logger.warning("Pid %s ignored the interrupt, killed it", self._process.pid)
            return
        if self.state in {EngineState.DRAINING, EngineState.CLOSED}:
            return
        if self._current >= len(self.rules):
            return

        if event.kind == TIMER_IMMEDIATE:
            if event.rule_index < self._current:
                return
            for index in range(self._current, event.rule_index):
                self._skipped += 1
                logger.info(
                    "Skipping auto-response %d: immediate response %d fired first",
                    index + 1,
                    event.rule_index + 1,
                )
            await self._fire(event.rule_index)
        elif event.kind == TIMER_SEND:
            if event.rule_index == self._current:
                await self._fire(event.rule_index)
        elif event.kind == TIMER_BOOTSTRAP:
            rule = self.rules[self._current]
            if self._has_output or rule.trigger is not None or rule.immediate:
                return
            logger.info(
                "No output after %.1fs, sending auto-response %d without waiting",
                self._bootstrap_seconds,
                self._current + 1,
            )
            await self._fire(self._current)

    def _arm_current(self) -> None:
        if self._current >= len(self.rules):
            logger.debug("All auto-responses sent, collecting output until exit")
            return
        self._transition(EngineState.RESPONSE_ARMED)
        rule = self.rules[self._current]
        if rule.immediate:
            return
        if rule.trigger is not None:
            self._scan_for_trigger(self._current)
        else:
            self._schedule_send(self._current, rule.delay_seconds)

    def _scan_for_trigger(self, index: int) -> None:
        rule = self.rules[index]
        assert rule.trigger is not None
        for stream in (STDOUT, STDERR):
            match = rule.trigger.search(self._buffers[stream], self._scan_offsets[stream])
            if match is None:
                continue
            self._scan_offsets[stream] = match.end()
            logger.info("Trigger %r matched on %s", rule.trigger.pattern, stream)
            self._schedule_send(index, rule.delay_seconds)
            return

    async def _fire(self, index: int) -> None:
        rule = self.rules[index]
        self._cancel_send()
        self._current = index + 1
        for stream, buffer in self._buffers.items():
            self._scan_offsets[stream] = len(buffer)
        self._fired += 1
        self._transition(EngineState.RESPONSE_FIRED)
        await self._write(rule.payload)
        logger.info(
            "Sent auto-response %d/%d: %r",
            index + 1,
            len(self.rules),
            rule.payload.decode("utf-8"),
        )
        if rule.close_after:
            self._transition(EngineState.DRAINING)
            self._schedule(self._close_grace_seconds, TimerFired(TIMER_INTERRUPT))
            return
        self._arm_current()

    async def _write(self, payload: bytes) -> None:
        assert self._process is not None
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            logger.warning("Child stdin is closed, auto-response dropped")
            return
        try:
            stdin.write(payload)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as error:
            logger.warning("Child stdin is closed, auto-response dropped: %s", error)

    def _send_interrupt(self) -> None:
        assert self._process is not None
        if signal_process_group(self._process, signal.SIGINT):
            self._interrupt_sent = True
            logger.info("Sent interrupt to pid %s after final auto-response", self._process.pid)
            self._schedule(INTERRUPT_ESCALATION_SECONDS, TimerFired(TIMER_KILL))

    def _schedule_spawn_timers(self) -> None:
        for index, rule in enumerate(self.rules):
            if rule.immediate:
                self._schedule(
                    rule.delay_seconds or IMMEDIATE_DEFAULT_DELAY_SECONDS,
                    TimerFired(TIMER_IMMEDIATE, index),
                )
        if self._bootstrap_seconds > 0:
            self._schedule(self._bootstrap_seconds, TimerFired(TIMER_BOOTSTRAP))

    def _schedule(self, delay: float, event: TimerFired) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(max(0.0, delay), self._queue.put_nowait, event)
        self._timers.append(handle)
        return handle

    def _schedule_send(self, index: int, delay: float) -> None:
        self._send_handle = self._schedule(delay, TimerFired(TIMER_SEND, index))

    def _cancel_send(self) -> None:
        if self._send_handle is not None:
            self._send_handle.cancel()
            self._send_handle = None

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self._send_handle = None

    def _transition(self, state: EngineState) -> None:
        if state is not self.state:
            logger.debug("Automation engine %s -> %s", self.state.value, state.value)
            self.state = state

    def _result(self) -> ProcessResult:
        exit_code = normalize_exit_code(self._returncode)
        if self._interrupt_sent and is_interrupt_exit(self._returncode):
            exit_code = 0
        return ProcessResult(
            exit_code=exit_code,
            stdout=truncate_output(self._buffers[STDOUT], self._max_output_chars),
            stderr=truncate_output(self._buffers[STDERR], self._max_output_chars),
            interrupted=self._interrupt_sent,
            fired_rules=self._fired,
        )

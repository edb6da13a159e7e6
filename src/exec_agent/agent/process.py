"""Subprocess helpers shared by the runner and the automation engine."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
from collections.abc import Callable

from exec_agent.agent.models import ProcessResult

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"
READ_CHUNK_BYTES = 4096
TRUNCATION_MARKER = "\n...[truncated]...\n"

OutputSink = Callable[[str, str], None]


class ProcessSpawnError(RuntimeError):
    """The child process could not be started."""


def console_echo(stream: str, text: str) -> None:
    """Mirror child output on the agent's own console."""

    target = sys.stderr if stream == STDERR else sys.stdout
    target.write(text)
    target.flush()


def truncate_output(text: str, max_chars: int) -> str:
    """Keep the head and tail of long output."""

    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    head = keep // 2
    tail = keep - head
    return f"{text[:head]}{TRUNCATION_MARKER}{text[len(text) - tail:]}"


def normalize_exit_code(returncode: int | None) -> int:
    """Map signal terminations to the shell convention of 128 + signal."""

    if returncode is None:
        return -1
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


def is_interrupt_exit(returncode: int | None) -> bool:
    return returncode in {-signal.SIGINT, 128 + signal.SIGINT}


async def spawn_shell(
    command: str,
    *,
    stdin: int | None,
    stdout: int | None,
    stderr: int | None,
    new_session: bool = True,
) -> asyncio.subprocess.Process:
    """Start ``command`` through the shell, by default in its own process group."""

    try:
        return await asyncio.create_subprocess_shell(
            command,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            start_new_session=new_session and os.name != "nt",
        )
    except OSError as error:
        raise ProcessSpawnError(f"Failed to start {command!r}: {error}") from error


def signal_process_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Deliver ``sig`` to the child's process group; ``False`` if it is already gone."""

    if process.returncode is not None:
        return False
    try:
        if os.name == "nt":
            process.terminate()
        else:
            os.killpg(process.pid, sig)
    except ProcessLookupError:
        return False
    return True


async def terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float = 2.0) -> None:
    """Stop a child that is still running, escalating to SIGKILL."""

    if not signal_process_group(process, signal.SIGTERM):
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        signal_process_group(process, signal.SIGKILL)
        await process.wait()


class StreamDecoder:
    """Incremental UTF-8 decoder that never fails on split or invalid bytes."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


async def pump_stream(
    reader: asyncio.StreamReader,
    stream: str,
    on_text: Callable[[str, str], None],
) -> None:
    """Read a pipe until EOF, handing decoded text to ``on_text``."""

    decoder = StreamDecoder()
    while True:
        data = await reader.read(READ_CHUNK_BYTES)
        if not data:
            break
        text = decoder.feed(data)
        if text:
            on_text(stream, text)
    tail = decoder.flush()
    if tail:
        on_text(stream, tail)


async def run_captured(
    command: str,
    *,
    echo: OutputSink | None = None,
    max_output_chars: int = 65_536,
) -> ProcessResult:
    """Run a non-interactive command, capturing both streams concurrently."""

    process = await spawn_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    buffers: dict[str, list[str]] = {STDOUT: [], STDERR: []}

    def _collect(stream: str, text: str) -> None:
        buffers[stream].append(text)
        if echo is not None:
            echo(stream, text)

    assert process.stdout is not None
    assert process.stderr is not None
    try:
        await asyncio.gather(
            pump_stream(process.stdout, STDOUT, _collect),
            pump_stream(process.stderr, STDERR, _collect),
        )
        returncode = await process.wait()
    except asyncio.CancelledError:
        await terminate_process(process)
        raise
    logger.debug("Command %r exited with %s", command, returncode)
    return ProcessResult(
        exit_code=normalize_exit_code(returncode),
        stdout=truncate_output("".join(buffers[STDOUT]), max_output_chars),
        stderr=truncate_output("".join(buffers[STDERR]), max_output_chars),
    )


async def run_inherited(command: str) -> ProcessResult:
    """Run a command attached to the agent's own terminal."""

    process = await spawn_shell(command, stdin=None, stdout=None, stderr=None, new_session=False)
    try:
        returncode = await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.terminate()
            await process.wait()
        raise
    return ProcessResult(exit_code=normalize_exit_code(returncode))

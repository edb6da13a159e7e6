"""Hand a command to a visible terminal window."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import sys
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from exec_agent.agent.models import AutoResponseRule
from exec_agent.agent.process import ProcessSpawnError, normalize_exit_code
from exec_agent.agent.task_specs import CommandSpec

logger = logging.getLogger(__name__)

LINUX_TERMINALS: dict[str, Callable[[str], list[str]]] = {
    "gnome-terminal": lambda script: ["gnome-terminal", "--wait", "--", "bash", script],
    "konsole": lambda script: ["konsole", "-e", "bash", script],
    "xterm": lambda script: ["xterm", "-e", "bash", script],
    "alacritty": lambda script: ["alacritty", "-e", "bash", script],
    "kitty": lambda script: ["kitty", "bash", script],
    "terminator": lambda script: ["terminator", "-x", "bash", script],
    "x-terminal-emulator": lambda script: ["x-terminal-emulator", "-e", "bash", script],
}
MACOS_DEFAULT_APP = "Terminal"
EXPECT_MISSING_WARNING = "'expect' is not installed; running without auto-responses"
WINDOWS_AUTO_RESPONSE_WARNING = "auto-responses are not supported in Windows terminals; running without them"
IMMEDIATE_DEFAULT_DELAY_MS = 100

EXPECT_PRELUDE = r"""set timeout -1
spawn bash -c $env(EXEC_AGENT_COMMAND)
set started [clock milliseconds]
set current 1

proc finish {} {
    catch wait result
    exit [lindex $result 3]
}

proc finish_interrupted {} {
    catch wait result
    if {[lindex $result 4] eq "CHILDKILLED" || [lindex $result 3] == 130} {
        exit 0
    }
    exit [lindex $result 3]
}

proc due_immediate {} {
    global current started immediate_at
    set due 0
    set elapsed [expr {[clock milliseconds] - $started}]
    foreach index [array names immediate_at] {
        if {$index >= $current && $index > $due && $elapsed >= $immediate_at($index)} {
            set due $index
        }
    }
    return $due
}

proc wait_seconds {deadline} {
    global current started immediate_at
    foreach index [array names immediate_at] {
        if {$index >= $current} {
            set at [expr {$started + $immediate_at($index)}]
            if {$deadline < 0 || $at < $deadline} {
                set deadline $at
            }
        }
    }
    if {$deadline < 0} {
        return -1
    }
    return [expr {max(0, ($deadline - [clock milliseconds] + 999) / 1000)}]
}

proc fire {index} {
    global current env close_rule grace_ms
    if {$index < $current} {
        return
    }
    send -- $env(EXEC_AGENT_INPUT_$index)
    set current [expr {$index + 1}]
    if {[info exists close_rule($index)]} {
        after $grace_ms
        send "\003"
        set timeout -1
        expect eof
        finish_interrupted
    }
    expect -timeout 0 -re ".+" {} eof finish
}
"""


class TerminalSpawnError(RuntimeError):
    """No way to open a terminal window on this host."""


@dataclass(slots=True)
class TerminalLaunch:
    terminal_app: str
    exit_code: int
    pid: int | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TerminalScript:
    path: Path
    warnings: list[str]


class TerminalSpawner:
    """Write a launcher script and open it in a terminal emulator.

    The launcher's exit code is reported back. With a custom
    ``terminal_command`` such as ``"bash {script}"`` that is the command's
    own exit status; GUI launchers that detach report their own status.
    """

    def __init__(
        self,
        *,
        terminal_command: str = "",
        platform: str | None = None,
        close_grace_seconds: float = 1.0,
        expect_lookup: Callable[[], str | None] | None = None,
        which: Callable[[str], str | None] = shutil.which,
        script_dir: Path | None = None,
    ) -> None:
        self._terminal_command = terminal_command
        self._platform = platform or sys.platform
        self._close_grace_seconds = close_grace_seconds
        self._expect_lookup = expect_lookup or (lambda: shutil.which("expect"))
        self._which = which
        self._script_dir = script_dir

    async def launch(self, spec: CommandSpec) -> TerminalLaunch:
        if self._platform.startswith("win") and not self._terminal_command:
            return await self._launch_windows(spec)

        script = self.write_script(spec)
        try:
            terminal_app, argv = self._launcher_argv(spec, script.path)
        except TerminalSpawnError:
            script.path.unlink(missing_ok=True)
            raise
        try:
            return await self._open(spec, terminal_app, argv, script.warnings)
        except ProcessSpawnError:
            script.path.unlink(missing_ok=True)
            raise

    async def _launch_windows(self, spec: CommandSpec) -> TerminalLaunch:
        """``cmd`` cannot run the bash launcher, so the command goes in as-is."""

        warnings: list[str] = []
        if spec.auto_responses:
            logger.warning("%s: %s", WINDOWS_AUTO_RESPONSE_WARNING, spec.command)
            warnings.append(WINDOWS_AUTO_RESPONSE_WARNING)
        keep_open = "/k" if spec.keep_terminal_open else "/c"
        argv = ["cmd", "/c", "start", "/wait", "cmd", keep_open, spec.command]
        return await self._open(spec, "cmd", argv, warnings)

    async def _open(
        self,
        spec: CommandSpec,
        terminal_app: str,
        argv: list[str],
        warnings: list[str],
    ) -> TerminalLaunch:
        logger.info("Opening %r in %s", spec.command, terminal_app)
        try:
            process = await asyncio.create_subprocess_exec(*argv)
        except OSError as error:
            raise ProcessSpawnError(f"Failed to open terminal {terminal_app}: {error}") from error
        returncode = await process.wait()
        return TerminalLaunch(
            terminal_app=terminal_app,
            exit_code=normalize_exit_code(returncode),
            pid=process.pid,
            warnings=list(warnings),
        )

    def write_script(self, spec: CommandSpec) -> TerminalScript:
        """Render the bash launcher (and expect program) to temp files."""

        warnings: list[str] = []
        env_lines = [f"export EXEC_AGENT_COMMAND={shlex.quote(spec.command)}"]
        cleanup = ['"$0"']
        body = 'bash -c "$EXEC_AGENT_COMMAND"'

        if spec.auto_responses:
            expect_path = self._expect_lookup()
            if expect_path is None:
                logger.warning("%s: %s", EXPECT_MISSING_WARNING, spec.command)
                warnings.append(EXPECT_MISSING_WARNING)
                body = f"echo {shlex.quote('Warning: ' + EXPECT_MISSING_WARNING)}\n{body}"
            else:
                expect_file = self._temp_file(".exp")
                expect_file.write_text(
                    render_expect_program(spec.auto_responses, self._close_grace_seconds),
                    "utf-8",
                )
                for index, rule in enumerate(spec.auto_responses, start=1):
                    env_lines.append(
                        f"export EXEC_AGENT_INPUT_{index}="
                        f"{shlex.quote(rule.payload.decode('utf-8').replace(chr(10), chr(13)))}",
                    )
                    if rule.trigger is not None:
                        env_lines.append(
                            f"export EXEC_AGENT_TRIGGER_{index}={shlex.quote(rule.trigger.pattern)}",
                        )
                body = f"{shlex.quote(expect_path)} -f {shlex.quote(str(expect_file))}"
                cleanup.append(shlex.quote(str(expect_file)))

        lines = [
            "#!/usr/bin/env bash",
            *env_lines,
            'echo "=== exec-agent task ==="',
            'echo "Command: $EXEC_AGENT_COMMAND"',
            "echo",
            body,
            "status=$?",
            "echo",
            'echo "=== finished with exit code $status ==="',
        ]
        if spec.keep_terminal_open:
            lines.append('read -n 1 -s -r -p "Press any key to close..."; echo')
        lines.append(f"rm -f -- {' '.join(cleanup)}")
        lines.append("exit $status")

        path = self._temp_file(".sh")
        path.write_text("\n".join(lines) + "\n", "utf-8")
        path.chmod(0o700)
        return TerminalScript(path=path, warnings=warnings)

    def _launcher_argv(self, spec: CommandSpec, script: Path) -> tuple[str, list[str]]:
        quoted = shlex.quote(str(script))
        if self._terminal_command:
            argv = shlex.split(self._terminal_command.replace("{script}", quoted))
            return argv[0], argv
        if self._platform == "darwin":
            app = spec.terminal_app or MACOS_DEFAULT_APP
            if app.lower().startswith("iterm"):
                apple_script = (
                    'tell application "iTerm" to create window with default profile '
                    f'command "bash {script}"'
                )
            else:
                apple_script = f'tell application "{app}" to do script "bash {quoted}"'
            return app, ["osascript", "-e", apple_script]
        for name in self._linux_candidates(spec.terminal_app):
            if self._which(name) is not None:
                return name, LINUX_TERMINALS[name](str(script))
        raise TerminalSpawnError("No supported terminal emulator found")

    def _linux_candidates(self, preferred: str) -> Sequence[str]:
        if preferred:
            if preferred not in LINUX_TERMINALS:
                raise TerminalSpawnError(f"Unsupported terminal app: {preferred}")
            return [preferred]
        return list(LINUX_TERMINALS)

    def _temp_file(self, suffix: str) -> Path:
        handle, name = tempfile.mkstemp(prefix="exec-agent-", suffix=suffix, dir=self._script_dir)
        os.close(handle)
        return Path(name)


def render_expect_program(rules: Sequence[AutoResponseRule], close_grace_seconds: float) -> str:
    """Expect program enforcing the rules the way the in-process engine does.

    Immediate rules are due at a fixed offset from spawn and may pre-empt an
    earlier rule still waiting for its trigger. The program exits with the
    child's own status, or 0 when the child ends on the interrupt sent after
    a ``close_after`` rule.
    """

    immediate_at = {
        index: int(rule.delay_seconds * 1000) or IMMEDIATE_DEFAULT_DELAY_MS
        for index, rule in enumerate(rules, start=1)
        if rule.immediate
    }
    close_rules = [index for index, rule in enumerate(rules, start=1) if rule.close_after]
    lines = [
        EXPECT_PRELUDE,
        f"set grace_ms {int(close_grace_seconds * 1000)}",
        f"array set immediate_at {{{_tcl_pairs(immediate_at)}}}",
        f"array set close_rule {{{_tcl_pairs(dict.fromkeys(close_rules, 1))}}}",
    ]
    for index, rule in enumerate(rules, start=1):
        lines.append("")
        lines.extend(_rule_block(index, rule))
    lines.extend(["", "interact", "finish"])
    return "\n".join(lines) + "\n"


def _rule_block(index: int, rule: AutoResponseRule) -> list[str]:
    delay_ms = int(rule.delay_seconds * 1000)
    waits_for_trigger = rule.trigger is not None and not rule.immediate
    waits_for_delay = not rule.immediate and rule.trigger is None
    block: list[str] = []
    if waits_for_delay:
        block.append(f"set fire_at [expr {{[clock milliseconds] + {delay_ms}}}]")
    block.extend(
        [
            f"while {{$current <= {index}}} {{",
            "    set due [due_immediate]",
            "    if {$due} {",
            "        fire $due",
            "        continue",
            "    }",
        ],
    )
    if waits_for_delay:
        block.extend(
            [
                "    if {[clock milliseconds] >= $fire_at} {",
                f"        fire {index}",
                "        continue",
                "    }",
                "    set timeout [wait_seconds $fire_at]",
            ],
        )
    else:
        block.append("    set timeout [wait_seconds -1]")
    block.append("    expect {")
    if waits_for_trigger:
        block.append(f"        -re $env(EXEC_AGENT_TRIGGER_{index}) {{")
        if delay_ms:
            block.append(f"            after {delay_ms}")
        block.extend([f"            fire {index}", "        }"])
    block.extend(["        timeout {}", "        eof finish", "    }", "}"])
    return block


def _tcl_pairs(values: dict[int, int]) -> str:
    return " ".join(f"{key} {value}" for key, value in values.items())

from __future__ import annotations

import asyncio
import re
import time

import allure
import pytest

from exec_agent.agent.interactive import EngineState, InteractiveAutomationEngine
from exec_agent.agent.models import AutoResponseRule

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Interactive Automation"),
]


def _run(engine: InteractiveAutomationEngine, command: str):
    return asyncio.run(asyncio.wait_for(engine.run(command), timeout=20))


def test_triggers_answer_prompts_in_order() -> None:
    engine = InteractiveAutomationEngine(
        [
            AutoResponseRule(input="bob", trigger=re.compile(r"name\?")),
            AutoResponseRule(input="42", trigger=re.compile(r"age\?")),
        ],
        bootstrap_seconds=0,
    )

    result = _run(engine, "printf 'name? '; read n; printf 'age? '; read a; echo \"$n/$a\"")

    assert result.exit_code == 0
    assert "bob/42" in result.stdout
    assert result.fired_rules == 2
    assert result.interrupted is False
    assert engine.state is EngineState.CLOSED


def test_trigger_matches_stderr() -> None:
    engine = InteractiveAutomationEngine(
        [AutoResponseRule(input="yes", trigger=re.compile(r"Continue\?"))],
        bootstrap_seconds=0,
    )

    result = _run(engine, "echo 'Continue?' >&2; read answer; echo \"answer=$answer\"")

    assert "Continue?" in result.stderr
    assert "answer=yes" in result.stdout


def test_immediate_rule_skips_earlier_unfired_rule() -> None:
    engine = InteractiveAutomationEngine(
        [
            AutoResponseRule(input="from-a", trigger=re.compile("NEVER_PRINTED")),
            AutoResponseRule(input="from-b", immediate=True),
        ],
        bootstrap_seconds=0,
    )

    result = _run(engine, "read line; echo \"got:$line\"")

    assert "got:from-b" in result.stdout
    assert "from-a" not in result.stdout
    assert engine.fired_rules == 1
    assert engine.skipped_rules == 1


def test_bootstrap_fires_first_rule_when_child_is_silent() -> None:
    engine = InteractiveAutomationEngine(
        [AutoResponseRule(input="ping", delay_seconds=30)],
        bootstrap_seconds=0.2,
    )

    started = time.monotonic()
    result = _run(engine, "read line; echo \"got:$line\"")

    assert "got:ping" in result.stdout
    assert time.monotonic() - started < 10


def test_close_after_interrupts_child_and_reports_success() -> None:
    echoed: list[tuple[str, str]] = []
    engine = InteractiveAutomationEngine(
        [AutoResponseRule(input="hi", immediate=True, close_after=True)],
        bootstrap_seconds=0,
        close_grace_seconds=0.2,
        echo=lambda stream, text: echoed.append((stream, text)),
    )

    started = time.monotonic()
    result = _run(
        engine,
        "trap 'echo interrupted; exit 130' INT; read x; echo \"got $x\"; "
        "while true; do sleep 0.1; done",
    )

    assert time.monotonic() - started < 5
    assert result.exit_code == 0
    assert result.interrupted is True
    assert "got hi" in result.stdout
    assert "interrupted" in result.stdout
    assert any("got hi" in text for _, text in echoed)


def test_nonzero_exit_code_is_authoritative() -> None:
    engine = InteractiveAutomationEngine(
        [AutoResponseRule(input="x", immediate=True)],
        bootstrap_seconds=0,
    )

    result = _run(engine, "read x; exit 7")

    assert result.exit_code == 7
    assert result.interrupted is False


def test_no_rules_runs_as_passthrough() -> None:
    engine = InteractiveAutomationEngine([])

    result = _run(engine, "exit 3")

    assert result.exit_code == 3
    assert result.stdout == ""
    assert engine.state is EngineState.CLOSED


def test_engine_is_single_use() -> None:
    engine = InteractiveAutomationEngine([])
    _run(engine, "true")

    with pytest.raises(RuntimeError, match="single-use"):
        _run(engine, "true")


def test_untriggered_rule_follows_previous_answer_without_new_output() -> None:
    engine = InteractiveAutomationEngine(
        [
            AutoResponseRule(input="bob", trigger=re.compile("Name:")),
            AutoResponseRule(input="y"),
        ],
        bootstrap_seconds=0,
    )

    result = _run(engine, "echo Name:; read a; read b; echo \"got $a $b\"")

    assert "got bob y" in result.stdout
    assert result.fired_rules == 2


def test_trigger_ignores_output_from_before_previous_answer() -> None:
    engine = InteractiveAutomationEngine(
        [
            AutoResponseRule(input="first", trigger=re.compile("Login:")),
            AutoResponseRule(input="second", trigger=re.compile(r"Proceed\?")),
        ],
        bootstrap_seconds=0,
    )

    result = _run(
        engine,
        "echo 'Proceed?' >&2; sleep 0.3; echo Login:; read a; echo \"after-a=$a\"; sleep 0.5",
    )

    assert "after-a=first" in result.stdout
    assert result.fired_rules == 1
    assert engine.state is EngineState.CLOSED

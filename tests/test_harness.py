"""Tests for the per-session script harness."""

import asyncio
import glob
import os
import tempfile

import pytest

from iterm_stack.config import HarnessOptions, SessionDescriptor
from iterm_stack.errors import ErrorType, SessionError
from iterm_stack.harness import render_script, run_inject, run_script, run_session, temp_prefix
from iterm_stack.layout import LiveSession


def _leftover_files(name: str) -> list[str]:
    return glob.glob(os.path.join(tempfile.gettempdir(), f"{temp_prefix(name)}-*"))


def _live(terminal, name: str) -> LiveSession:
    pane = terminal.new_session()
    pane.name = name
    return LiveSession(session=pane, assigned_to=name)


def test_render_script():
    assert render_script("echo hi\n", "/tmp/a-done-1") == (
        "set -x\n"
        "echo hi\n"
        "\n"
        "echo 'done' > /tmp/a-done-1\n"
    )


def test_temp_prefix():
    assert temp_prefix("server:web") == "server:web"
    assert temp_prefix("nested.1") == "nested.1"
    assert temp_prefix("a/b c") == "a_b_c"


@pytest.mark.asyncio
async def test_run_script_sends_bash_and_waits(terminal, fast_options):
    name = "harness-ok"
    live = _live(terminal, name)
    descriptor = SessionDescriptor(name=name, script="echo hi\n")

    await run_script(live, descriptor, fast_options)

    [sent] = live.session.sent
    assert sent.startswith("bash ")
    assert sent.endswith("\n")
    script_path = sent[len("bash "):-1]
    assert os.path.basename(script_path).startswith(f"{name}-script-")

    [script] = live.session.scripts
    assert script.startswith("set -x\necho hi\n")
    assert f"{name}-done-" in script
    assert terminal.events == [("start", name), ("end", name)]
    assert _leftover_files(name) == []


@pytest.mark.asyncio
async def test_run_script_pane_dies(terminal, fast_options):
    name = "harness-dies"
    live = _live(terminal, name)
    live.session.completes = False
    descriptor = SessionDescriptor(name=name, script="exit\n")

    async def kill_soon():
        await asyncio.sleep(0.05)
        live.session.kill()

    killer = asyncio.create_task(kill_soon())
    with pytest.raises(SessionError, match="session closed while waiting for script") as exc_info:
        await run_script(live, descriptor, fast_options)
    await killer

    assert exc_info.value.session == name
    assert terminal.calls_named("get_variable")[-1] == ("get_variable", live.session_id, "jobName")
    assert _leftover_files(name) == []


@pytest.mark.asyncio
async def test_run_script_timeout(terminal):
    name = "harness-timeout"
    live = _live(terminal, name)
    live.session.completes = False
    descriptor = SessionDescriptor(name=name, script="sleep 1000\n")
    options = HarnessOptions(settle_time=0.0, poll_interval=0.01, timeout=0.1)

    with pytest.raises(SessionError, match="did not finish within") as exc_info:
        await run_script(live, descriptor, options)

    assert exc_info.value.error_type is ErrorType.TIMEOUT_ERROR
    assert _leftover_files(name) == []


@pytest.mark.asyncio
async def test_run_script_cancelled_removes_files(terminal, fast_options):
    name = "harness-cancel"
    live = _live(terminal, name)
    live.session.completes = False
    descriptor = SessionDescriptor(name=name, script="sleep 1000\n")

    task = asyncio.create_task(run_script(live, descriptor, fast_options))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert _leftover_files(name) == []


@pytest.mark.asyncio
async def test_run_inject(terminal):
    live = _live(terminal, "inj")

    await run_inject(live, SessionDescriptor(name="inj", inject="echo 'start server'"))

    assert live.session.sent == ["echo 'start server'\n"]


@pytest.mark.asyncio
async def test_run_session_dispatches(terminal, fast_options):
    scripted = _live(terminal, "harness-dispatch")
    injected = _live(terminal, "harness-inject")

    await run_session(scripted, SessionDescriptor(name="harness-dispatch", script="true\n"), fast_options)
    await run_session(injected, SessionDescriptor(name="harness-inject", inject="ls"), fast_options)

    assert scripted.session.sent[0].startswith("bash ")
    assert injected.session.sent == ["ls\n"]

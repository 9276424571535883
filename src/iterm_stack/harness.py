# =============================================================================
# Session Harness
# =============================================================================
# Drives one pane. A `script` is written to a temp file, run with bash, and
# signals completion by writing a sentinel file; the pane's output is never
# read. An `inject` is typed into the shell as-is and not tracked.

from __future__ import annotations

import asyncio
import os
import re
import shlex
import tempfile
import time

from loguru import logger

from iterm_stack.config import HarnessOptions, SessionDescriptor
from iterm_stack.errors import ErrorType, ProtocolError, SessionError
from iterm_stack.layout import LiveSession

# Any session variable works; jobName is always set while the pane lives
LIVENESS_VARIABLE = "jobName"


def temp_prefix(name: str) -> str:
    """File-name-safe form of a session name."""
    return re.sub(r"[^\w.:-]", "_", name) or "session"


def render_script(body: str, done_file: str) -> str:
    return f"set -x\n{body}\necho 'done' > {shlex.quote(done_file)}\n"


def _remove_quietly(path: str, session: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(
            "Could not remove temp file",
            operation="run_script",
            status="cleanup_failed",
            session=session,
            file=path,
            error=str(e)
        )


async def wait_for_sentinel(live: LiveSession, done_file: str, poll_interval: float) -> None:
    """Block until ``done_file`` has content, or the pane goes away."""
    name = live.assigned_to
    while True:
        try:
            with open(done_file, "r") as f:
                content = f.read().strip()
        except OSError as e:
            raise SessionError(name, f"unable to read done file: {e}", done_file=done_file) from e
        if content:
            return

        await asyncio.sleep(poll_interval)

        try:
            await live.session.get_variable(LIVENESS_VARIABLE)
        except ProtocolError as e:
            raise SessionError(
                name,
                "session closed while waiting for script",
                session_id=live.session_id,
                error=e.message
            ) from e


async def run_script(live: LiveSession, descriptor: SessionDescriptor, options: HarnessOptions) -> None:
    """
    Run a session's script in its pane and wait for it to finish.

    Args:
        live: Pane bound to the session
        descriptor: Session whose `script` is run
        options: Settle time, poll interval and timeout

    Raises:
        SessionError: Pane closed, sentinel unreadable, or timeout
    """
    name = descriptor.name
    prefix = temp_prefix(name)
    cleanup: list[str] = []
    start_time = time.perf_counter()

    try:
        done_fd, done_file = tempfile.mkstemp(prefix=f"{prefix}-done-")
        os.close(done_fd)
        cleanup.append(done_file)

        script_fd, script_file = tempfile.mkstemp(prefix=f"{prefix}-script-")
        cleanup.append(script_file)
        with os.fdopen(script_fd, "w") as f:
            f.write(render_script(descriptor.script, done_file))

        logger.info(
            "Preparing session files",
            operation="run_script",
            session=name,
            done=done_file,
            script=script_file
        )

        await asyncio.sleep(options.settle_time)
        await live.session.send_text(f"bash {shlex.quote(script_file)}\n")

        logger.info(
            "Started session",
            operation="run_script",
            status="started",
            session=name,
            session_id=live.session_id
        )

        if options.has_timeout:
            try:
                async with asyncio.timeout(options.timeout):
                    await wait_for_sentinel(live, done_file, options.poll_interval)
            except TimeoutError as e:
                raise SessionError(
                    name,
                    f"script did not finish within {options.timeout:g}s",
                    error_type=ErrorType.TIMEOUT_ERROR,
                    timeout=options.timeout
                ) from e
        else:
            await wait_for_sentinel(live, done_file, options.poll_interval)

    except OSError as e:
        raise SessionError(name, f"cannot prepare script files: {e}") from e
    finally:
        for path in cleanup:
            _remove_quietly(path, name)

    duration_ms = int((time.perf_counter() - start_time) * 1000)
    logger.info(
        "Script finished",
        operation="run_script",
        status="success",
        session=name,
        metrics={"duration_ms": duration_ms}
    )


async def run_inject(live: LiveSession, descriptor: SessionDescriptor) -> None:
    logger.info(
        "Feeding inject lines",
        operation="run_inject",
        session=descriptor.name,
        session_id=live.session_id
    )
    await live.session.send_text(descriptor.inject + "\n")


async def run_session(live: LiveSession, descriptor: SessionDescriptor, options: HarnessOptions) -> None:
    """Run whatever the session declares: its script, then its inject."""
    if descriptor.script:
        await run_script(live, descriptor, options)
    if descriptor.inject:
        await run_inject(live, descriptor)

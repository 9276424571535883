# =============================================================================
# Dependency Runner
# =============================================================================
# Level-synchronous walk of the `depends_on` graph:
#
#   1. Find every session that is not done and whose dependencies are done.
#   2. Run all of them concurrently and wait for the whole batch.
#   3. Repeat until everything is done.
#
# A child may wait on an unrelated sibling of its parent; that is the price
# of the simple batch barrier.

from __future__ import annotations

import asyncio
from uuid import uuid4

from loguru import logger

from iterm_stack.config import HarnessOptions, SessionDescriptor
from iterm_stack.errors import DependencyError, ErrorReport, ProtocolError, SessionError
from iterm_stack.harness import run_session
from iterm_stack.layout import LiveSession


class DoneSet:
    """Names of sessions that have finished. Only ever grows."""

    def __init__(self):
        self._names: set[str] = set()
        self._lock = asyncio.Lock()

    async def add(self, name: str) -> None:
        async with self._lock:
            self._names.add(name)

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._names)


def check_dependencies(sessions: dict[str, SessionDescriptor]) -> None:
    """
    Reject graphs the runner could never finish.

    Raises:
        DependencyError: a `depends_on` entry names no session, or the
            graph has a cycle
    """
    for name in sorted(sessions):
        for dependency in sessions[name].dependencies():
            if dependency not in sessions:
                raise DependencyError(
                    f"session {name!r} depends on unknown session {dependency!r}",
                    session=name,
                    dependency=dependency
                )

    # Iterative DFS; a node seen again while still on the stack closes a cycle
    visiting, visited = 1, 2
    state: dict[str, int] = {}
    for root in sorted(sessions):
        if root in state:
            continue
        path = [root]
        stack = [(root, iter(sessions[root].dependencies()))]
        state[root] = visiting
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                state[node] = visited
                stack.pop()
                path.pop()
                continue
            if state.get(child) == visiting:
                cycle = path[path.index(child):] + [child]
                raise DependencyError(
                    f"dependency cycle: {' -> '.join(cycle)}",
                    cycle=cycle
                )
            if child not in state:
                state[child] = visiting
                path.append(child)
                stack.append((child, iter(sessions[child].dependencies())))


def next_ready(sessions: dict[str, SessionDescriptor], done: DoneSet) -> list[SessionDescriptor]:
    """Sessions not yet done whose dependencies all are, sorted by name."""
    ready = []
    for name in sorted(sessions):
        if name in done:
            continue
        if all(dependency in done for dependency in sessions[name].dependencies()):
            ready.append(sessions[name])
    return ready


async def _run_worker(
    live: LiveSession,
    descriptor: SessionDescriptor,
    options: HarnessOptions,
    done: DoneSet,
    report: ErrorReport,
) -> None:
    try:
        await run_session(live, descriptor, options)
    except SessionError as e:
        # The batch must still complete, so a failed session counts as done
        report.add_error(e)
    await done.add(descriptor.name)


async def run_dependencies(
    assignment: dict[str, LiveSession],
    sessions: dict[str, SessionDescriptor],
    options: HarnessOptions,
    report: ErrorReport | None = None,
) -> list[list[str]]:
    """
    Run every session's script/inject in dependency order.

    Args:
        assignment: Pane bound to each session name
        sessions: Session descriptors by name
        options: Harness timing options
        report: Collects per-session failures (created if omitted)

    Returns:
        The batches that ran, each a list of session names

    Raises:
        DependencyError: unknown dependency, cycle, or no progress possible
    """
    report = report if report is not None else ErrorReport()
    check_dependencies(sessions)

    missing = [name for name in sorted(sessions) if name not in assignment]
    if missing:
        raise ProtocolError(f"no pane assigned to sessions: {', '.join(missing)}", sessions=missing)

    op_trace_id = str(uuid4())
    done = DoneSet()
    batches: list[list[str]] = []

    while len(done) < len(sessions):
        ready = next_ready(sessions, done)
        if not ready:
            pending = sorted(set(sessions) - done.snapshot())
            raise DependencyError(
                f"no runnable sessions left; waiting: {', '.join(pending)}",
                pending=pending
            )

        names = [descriptor.name for descriptor in ready]
        batches.append(names)
        logger.info(
            "Starting batch",
            operation="run_dependencies",
            status="batch_started",
            trace_id=op_trace_id,
            batch=len(batches),
            sessions=names
        )

        tasks = [
            asyncio.create_task(
                _run_worker(assignment[d.name], d, options, done, report),
                name=f"session:{d.name}"
            )
            for d in ready
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # Fatal error or cancellation: stop the rest of the batch too
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    logger.info(
        "All sessions done",
        operation="run_dependencies",
        status="complete",
        trace_id=op_trace_id,
        metrics={"batches": len(batches), "sessions": len(sessions)}
    )
    return batches

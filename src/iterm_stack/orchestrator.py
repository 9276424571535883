# =============================================================================
# Workspace Orchestration
# =============================================================================

from __future__ import annotations

from uuid import uuid4

from loguru import logger

from iterm_stack.cache import WindowCache
from iterm_stack.config import WorkspaceConfig
from iterm_stack.errors import ErrorReport, ProtocolError
from iterm_stack.layout import plan_layout, prepare_sessions
from iterm_stack.logging_config import trace_id_var
from iterm_stack.runner import check_dependencies, run_dependencies
from iterm_stack.terminal import SESSION_TITLE_PROPERTIES, Terminal, TerminalWindow


async def reclaim_window(terminal: Terminal, cache: WindowCache, workspace_id: str) -> str | None:
    """Close the window a previous run left for this workspace, if still open."""
    cached = cache.get(workspace_id)
    if not cached.window_id:
        return None

    for window in await terminal.list_windows():
        if window.window_id == cached.window_id:
            logger.info(
                "Closing existing window",
                operation="reclaim_window",
                window_id=window.window_id,
                workspace_id=workspace_id
            )
            await window.close(force=True)
            return window.window_id
    return None


async def create_workspace_window(terminal: Terminal, cache: WindowCache, config: WorkspaceConfig) -> TerminalWindow:
    window = await terminal.create_window(SESSION_TITLE_PROPERTIES)

    entry = cache.get(config.id)
    entry.window_id = window.window_id
    cache.put(config.id, entry)

    logger.info(
        "Created window",
        operation="create_workspace_window",
        status="success",
        window_id=window.window_id,
        workspace_id=config.id
    )

    await window.set_title(config.id)
    return window


async def launch_workspace(config: WorkspaceConfig, terminal: Terminal, cache: WindowCache) -> ErrorReport:
    """
    Build the workspace window and run every session.

    Flow:
    1. Activate iTerm2
    2. Close the window cached for this workspace id
    3. Create a window, cache its id, title it
    4. Split the first pane into the layout; name and cd every pane
    5. Run scripts/injects in dependency order

    Returns:
        ErrorReport holding the sessions that failed (non-fatal)
    """
    main_trace_id = str(uuid4())
    trace_id_var.set(main_trace_id)
    report = ErrorReport()

    logger.info(
        "Creating stack",
        operation="launch_workspace",
        status="started",
        trace_id=main_trace_id,
        workspace_id=config.id,
        metrics={"sessions": len(config.sessions)}
    )

    # Fail before touching any window
    check_dependencies(config.sessions)

    await terminal.activate(raise_all=True, ignore_other_apps=True)
    await reclaim_window(terminal, cache, config.id)
    window = await create_workspace_window(terminal, cache, config)

    tabs = await window.list_tabs()
    if not tabs:
        raise ProtocolError("no tabs in window", window_id=window.window_id)
    sessions = await tabs[0].list_sessions()
    if not sessions:
        raise ProtocolError("no sessions in tab", window_id=window.window_id, tab_id=tabs[0].tab_id)

    plan = await plan_layout(config, sessions[0])
    await prepare_sessions(config, plan)

    for identifier in config.menu_items:
        logger.debug(
            "Selecting menu item",
            operation="launch_workspace",
            trace_id=main_trace_id,
            identifier=identifier
        )
        await terminal.select_menu_item(identifier)

    await sessions[0].activate(select_tab=True, order_window_front=True)

    batches = await run_dependencies(plan.assignment, config.sessions, config.harness, report)

    logger.info(
        "Workspace launch complete",
        operation="launch_workspace",
        status="success" if not report.has_errors() else "partial",
        trace_id=main_trace_id,
        window_id=window.window_id,
        failed_sessions=report.failed_sessions(),
        metrics={
            "sessions": len(config.sessions),
            "batches": len(batches),
            "vertical_splits": plan.vertical_splits,
            "horizontal_splits": plan.horizontal_splits,
            "errors": len(report.errors)
        }
    )
    report.log_summary(main_trace_id)
    return report

# =============================================================================
# Pane Layout
# =============================================================================
# One column per group, one row per extra session in the group:
#
#   +-------+----------+---------+
#   | db    | server:a | setup   |
#   |       +----------+         |
#   |       | server:b |         |
#   +-------+----------+---------+
#
# All vertical splits happen first (in sorted group order, each from the
# most recent pane), then the horizontal splits inside each column.

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from iterm_stack.config import SessionDescriptor, WorkspaceConfig
from iterm_stack.terminal import SESSION_TITLE_PROPERTIES, ProfileProperties, TerminalSession


@dataclass
class LiveSession:
    session: TerminalSession
    assigned_to: str

    @property
    def session_id(self) -> str:
        return self.session.session_id


@dataclass
class LayoutPlan:
    assignment: dict[str, LiveSession] = field(default_factory=dict)
    panes: list[TerminalSession] = field(default_factory=list)
    last_in_group: dict[str, TerminalSession] = field(default_factory=dict)
    vertical_splits: int = 0
    horizontal_splits: int = 0

    def bind(self, descriptor: SessionDescriptor, pane: TerminalSession) -> None:
        self.assignment[descriptor.name] = LiveSession(session=pane, assigned_to=descriptor.name)
        self.last_in_group[descriptor.group()] = pane


async def _split(
    plan: LayoutPlan,
    descriptor: SessionDescriptor,
    split_from: TerminalSession,
    vertical: bool,
    properties: ProfileProperties,
) -> None:
    pane = await split_from.split_pane(vertical=vertical, properties=properties)
    plan.panes.append(pane)
    plan.bind(descriptor, pane)
    if vertical:
        plan.vertical_splits += 1
    else:
        plan.horizontal_splits += 1

    logger.info(
        "Assigned new session",
        operation="plan_layout",
        session=descriptor.name,
        group=descriptor.group(),
        session_id=pane.session_id,
        vertical=vertical
    )


async def plan_layout(
    config: WorkspaceConfig,
    initial: TerminalSession,
    properties: ProfileProperties = SESSION_TITLE_PROPERTIES,
) -> LayoutPlan:
    """
    Split the window's initial pane until every session has its own pane.

    Args:
        config: Workspace config (its sessions drive the layout)
        initial: The pane the new window was created with
        properties: Profile overrides for every new pane

    Returns:
        LayoutPlan binding each session name to a pane
    """
    plan = LayoutPlan(panes=[initial])
    by_group = config.sessions_by_group()

    # One column per group, from the first session of the group
    for group, descriptors in by_group.items():
        first = descriptors[0]
        if not plan.assignment:
            plan.bind(first, initial)
            logger.info(
                "Assigned initial session",
                operation="plan_layout",
                session=first.name,
                group=group,
                session_id=initial.session_id
            )
            continue
        await _split(plan, first, plan.panes[-1], True, properties)

    # Stack the rest of each group under its column
    for group, descriptors in by_group.items():
        for descriptor in descriptors[1:]:
            await _split(plan, descriptor, plan.last_in_group[group], False, properties)

    logger.debug(
        "Layout complete",
        operation="plan_layout",
        status="success",
        metrics={
            "groups": len(by_group),
            "sessions": len(plan.assignment),
            "vertical_splits": plan.vertical_splits,
            "horizontal_splits": plan.horizontal_splits,
        }
    )
    return plan


def cd_command(directory: str) -> str:
    """Shell line that moves a pane into ``directory``.

    Sent verbatim so the pane's shell expands ``~`` and ``$VARS``; quote
    paths with spaces in the config itself.
    """
    return f"cd {directory}\n"


async def prepare_sessions(config: WorkspaceConfig, plan: LayoutPlan) -> None:
    """Name every pane, then cd every pane into the workspace directory."""
    for name in sorted(config.sessions):
        await plan.assignment[name].session.set_name(name)

    if not config.directory:
        return

    command = cd_command(config.directory)
    for name in sorted(config.sessions):
        await plan.assignment[name].session.send_text(command)

    logger.debug(
        "Sessions moved to workspace directory",
        operation="prepare_sessions",
        status="success",
        directory=config.directory,
        metrics={"sessions": len(config.sessions)}
    )

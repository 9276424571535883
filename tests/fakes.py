"""In-memory stand-in for iTerm2.

Panes "run" a script when they receive ``bash <file>``: the fake reads the
script, waits ``run_delay`` seconds, then writes the sentinel the way the
real shell would. ``events`` records ("start"/"end", session name) pairs.
Names in ``FakeTerminal.doomed`` close their pane instead of finishing.
"""

from __future__ import annotations

import asyncio
import re
import shlex

from iterm_stack.errors import ProtocolError
from iterm_stack.terminal import (
    ProfileProperties,
    Terminal,
    TerminalSession,
    TerminalTab,
    TerminalWindow,
)

SENTINEL_RE = re.compile(r"^echo 'done' > (.+)$", re.MULTILINE)


class FakeSession(TerminalSession):
    def __init__(self, terminal: "FakeTerminal", session_id: str):
        self.terminal = terminal
        self.session_id = session_id
        self.name: str | None = None
        self.sent: list[str] = []
        self.scripts: list[str] = []
        self.alive = True
        self.completes = True
        self.run_delay = terminal.run_delay
        self._tasks: list[asyncio.Task] = []

    async def send_text(self, text: str) -> None:
        self.terminal.calls.append(("send_text", self.session_id, text))
        self.sent.append(text)
        if text.startswith("bash "):
            script_path = shlex.split(text)[1]
            with open(script_path) as f:
                script = f.read()
            self.scripts.append(script)
            self._tasks.append(asyncio.create_task(self._execute(script)))

    async def _execute(self, script: str) -> None:
        done_file = shlex.split(SENTINEL_RE.search(script).group(1))[0]
        self.terminal.events.append(("start", self.name))
        if self.name in self.terminal.doomed:
            self.kill()
        await asyncio.sleep(self.run_delay)
        if not (self.alive and self.completes):
            return
        self.terminal.events.append(("end", self.name))
        with open(done_file, "w") as f:
            f.write("done\n")

    async def split_pane(self, vertical: bool, properties: ProfileProperties | None = None) -> "FakeSession":
        pane = self.terminal.new_session()
        self.terminal.calls.append(("split_pane", self.session_id, vertical, pane.session_id))
        self.terminal.split_properties.append(properties)
        return pane

    async def set_name(self, name: str) -> None:
        self.terminal.calls.append(("set_name", self.session_id, name))
        self.name = name

    async def get_variable(self, name: str) -> str:
        self.terminal.calls.append(("get_variable", self.session_id, name))
        if not self.alive:
            raise ProtocolError(f"failed to get variable {name!r}: session not found")
        return "bash"

    async def activate(self, select_tab: bool = True, order_window_front: bool = True) -> None:
        self.terminal.calls.append(("activate_session", self.session_id))

    def kill(self) -> None:
        self.alive = False


class FakeTab(TerminalTab):
    def __init__(self, tab_id: str, sessions: list[FakeSession]):
        self.tab_id = tab_id
        self.sessions = sessions

    async def list_sessions(self) -> list[FakeSession]:
        return list(self.sessions)


class FakeWindow(TerminalWindow):
    def __init__(self, terminal: "FakeTerminal", window_id: str, tabs: list[FakeTab]):
        self.terminal = terminal
        self.window_id = window_id
        self.tabs = tabs
        self.title: str | None = None
        self.closed = False

    async def list_tabs(self) -> list[FakeTab]:
        return list(self.tabs)

    async def set_title(self, title: str) -> None:
        self.terminal.calls.append(("set_title", self.window_id, title))
        self.title = title

    async def close(self, force: bool = False) -> None:
        self.terminal.calls.append(("close_window", self.window_id, force))
        self.closed = True


class FakeTerminal(Terminal):
    def __init__(self):
        self.calls: list[tuple] = []
        self.events: list[tuple[str, str]] = []
        self.windows: list[FakeWindow] = []
        self.sessions: list[FakeSession] = []
        self.split_properties: list[ProfileProperties | None] = []
        self.menu_items: list[str] = []
        # panes with these names die as soon as their script starts
        self.doomed: set[str] = set()
        self.run_delay = 0.01
        self.window_properties: list[ProfileProperties | None] = []
        self._window_counter = 0

    def new_session(self) -> FakeSession:
        session = FakeSession(self, f"s{len(self.sessions)}")
        self.sessions.append(session)
        return session

    def add_window(self, window_id: str) -> FakeWindow:
        window = FakeWindow(self, window_id, [FakeTab(f"{window_id}t0", [self.new_session()])])
        self.windows.append(window)
        return window

    def session_named(self, name: str) -> FakeSession:
        return next(s for s in self.sessions if s.name == name)

    def calls_named(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]

    async def activate(self, raise_all: bool = True, ignore_other_apps: bool = True) -> None:
        self.calls.append(("activate", raise_all, ignore_other_apps))

    async def select_menu_item(self, identifier: str) -> None:
        self.calls.append(("select_menu_item", identifier))
        self.menu_items.append(identifier)

    async def create_window(self, properties: ProfileProperties | None = None) -> FakeWindow:
        window = self.add_window(f"new-w{self._window_counter}")
        self._window_counter += 1
        self.calls.append(("create_window", window.window_id))
        self.window_properties.append(properties)
        return window

    async def list_windows(self) -> list[FakeWindow]:
        self.calls.append(("list_windows",))
        return [w for w in self.windows if not w.closed]

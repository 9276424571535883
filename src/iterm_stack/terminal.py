# =============================================================================
# Terminal Control
# =============================================================================
# Capability surface over iTerm2's control API. The launcher only talks to
# the abstract classes below; ItermTerminal backs them with the iterm2
# Python API and tests back them with an in-memory fake.

from __future__ import annotations

import asyncio
import contextlib
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass

import iterm2
from loguru import logger
from websockets.exceptions import ConnectionClosed

from iterm_stack.errors import ProtocolError, TransportError


class TitleComponent(enum.IntFlag):
    """iTerm2 "Title Components" profile bitmask."""

    SESSION_NAME = 1 << 0
    JOB = 1 << 1
    WORKING_DIRECTORY = 1 << 2
    TTY = 1 << 3
    CUSTOM = 1 << 4  # Mutually exclusive with all other options
    PROFILE_NAME = 1 << 5
    PROFILE_AND_SESSION_NAME = 1 << 6
    USER = 1 << 7
    HOST = 1 << 8
    COMMAND_LINE = 1 << 9
    SIZE = 1 << 10


@dataclass(frozen=True)
class ProfileProperties:
    """Profile overrides applied to a new window or pane."""

    title_components: TitleComponent = TitleComponent(0)

    def to_iterm_profile(self) -> iterm2.LocalWriteOnlyProfile | None:
        if not self.title_components:
            return None
        profile = iterm2.LocalWriteOnlyProfile()
        profile.set_title_components(
            [iterm2.TitleComponents(flag.value) for flag in self.title_components]
        )
        return profile


# Panes show their session name as title
SESSION_TITLE_PROPERTIES = ProfileProperties(title_components=TitleComponent.SESSION_NAME)


class TerminalSession(ABC):
    session_id: str

    @abstractmethod
    async def send_text(self, text: str) -> None: ...

    @abstractmethod
    async def split_pane(self, vertical: bool, properties: ProfileProperties | None = None) -> "TerminalSession": ...

    @abstractmethod
    async def set_name(self, name: str) -> None: ...

    @abstractmethod
    async def get_variable(self, name: str) -> str: ...

    @abstractmethod
    async def activate(self, select_tab: bool = True, order_window_front: bool = True) -> None: ...


class TerminalTab(ABC):
    tab_id: str

    @abstractmethod
    async def list_sessions(self) -> list[TerminalSession]: ...


class TerminalWindow(ABC):
    window_id: str

    @abstractmethod
    async def list_tabs(self) -> list[TerminalTab]: ...

    @abstractmethod
    async def set_title(self, title: str) -> None: ...

    @abstractmethod
    async def close(self, force: bool = False) -> None: ...


class Terminal(ABC):
    @abstractmethod
    async def activate(self, raise_all: bool = True, ignore_other_apps: bool = True) -> None: ...

    @abstractmethod
    async def select_menu_item(self, identifier: str) -> None: ...

    @abstractmethod
    async def create_window(self, properties: ProfileProperties | None = None) -> TerminalWindow: ...

    @abstractmethod
    async def list_windows(self) -> list[TerminalWindow]: ...

    async def close(self) -> None:
        """Release the control channel. Nothing to do by default."""


# =============================================================================
# iTerm2 implementation
# =============================================================================


class ItermTerminal(Terminal):
    """Terminal backed by one iterm2.Connection.

    The connection is not safe for interleaved requests, so every call
    holds ``self._lock`` for its full request/response.
    """

    def __init__(self, connection: iterm2.Connection, app: iterm2.App):
        self.connection = connection
        self.app = app
        self._lock = asyncio.Lock()

    @classmethod
    async def connect(cls) -> "ItermTerminal":
        try:
            connection = await iterm2.Connection.async_create()
            app = await iterm2.async_get_app(connection)
        except ConnectionRefusedError as e:
            raise TransportError(
                "Connection refused. Is iTerm2 running with Python API enabled?"
            ) from e
        except Exception as e:
            raise TransportError(f"Failed to connect to iTerm2: {e}") from e

        if app is None:
            raise TransportError("Failed to connect to iTerm2: no app state returned")

        logger.info(
            "Connected to iTerm2",
            operation="connect",
            status="success"
        )
        return cls(connection, app)

    @contextlib.asynccontextmanager
    async def rpc(self, operation: str, **context):
        """Serialize one request and translate iterm2 failures."""
        async with self._lock:
            try:
                yield
            except (ConnectionError, OSError, ConnectionClosed) as e:
                # The connection to iTerm2 itself failed
                raise TransportError(f"{operation} failed: {e}", request=operation, **context) from e
            except iterm2.RPCException as e:
                raise ProtocolError(f"{operation} failed: {e}", request=operation, **context) from e
            except Exception as e:
                # iterm2 raises a per-request exception type for non-OK statuses
                raise ProtocolError(
                    f"{operation} failed: {type(e).__name__}: {e}",
                    request=operation,
                    **context
                ) from e

    async def activate(self, raise_all: bool = True, ignore_other_apps: bool = True) -> None:
        async with self.rpc("activate"):
            await self.app.async_activate(
                raise_all_windows=raise_all,
                ignoring_other_apps=ignore_other_apps
            )

    async def select_menu_item(self, identifier: str) -> None:
        async with self.rpc("select_menu_item", identifier=identifier):
            await iterm2.MainMenu.async_select_menu_item(self.connection, identifier)

    async def create_window(self, properties: ProfileProperties | None = None) -> "ItermWindow":
        profile = properties.to_iterm_profile() if properties else None
        async with self.rpc("create_window"):
            window = await iterm2.Window.async_create(
                self.connection,
                profile_customizations=profile
            )
        if window is None:
            raise ProtocolError("create_window failed: no window returned", request="create_window")
        return ItermWindow(self, window)

    async def list_windows(self) -> list["ItermWindow"]:
        async with self.rpc("list_windows"):
            await self.app.async_refresh()
        return [ItermWindow(self, w) for w in self.app.terminal_windows]


class ItermWindow(TerminalWindow):
    def __init__(self, terminal: ItermTerminal, window: iterm2.Window):
        self._terminal = terminal
        self._window = window
        self.window_id = window.window_id

    async def list_tabs(self) -> list["ItermTab"]:
        return [ItermTab(self._terminal, tab) for tab in self._window.tabs]

    async def set_title(self, title: str) -> None:
        async with self._terminal.rpc("set_title", window_id=self.window_id):
            await self._window.async_set_title(title)

    async def close(self, force: bool = False) -> None:
        async with self._terminal.rpc("close_window", window_id=self.window_id):
            await self._window.async_close(force=force)


class ItermTab(TerminalTab):
    def __init__(self, terminal: ItermTerminal, tab: iterm2.Tab):
        self._terminal = terminal
        self._tab = tab
        self.tab_id = tab.tab_id

    async def list_sessions(self) -> list["ItermSession"]:
        return [ItermSession(self._terminal, s) for s in self._tab.sessions]


class ItermSession(TerminalSession):
    def __init__(self, terminal: ItermTerminal, session: iterm2.Session):
        self._terminal = terminal
        self._session = session
        self.session_id = session.session_id

    async def send_text(self, text: str) -> None:
        async with self._terminal.rpc("send_text", session_id=self.session_id):
            await self._session.async_send_text(text)

    async def split_pane(self, vertical: bool, properties: ProfileProperties | None = None) -> "ItermSession":
        profile = properties.to_iterm_profile() if properties else None
        async with self._terminal.rpc("split_pane", session_id=self.session_id, vertical=vertical):
            new_session = await self._session.async_split_pane(
                vertical=vertical,
                profile_customizations=profile
            )
        if new_session is None:
            raise ProtocolError(
                "expected at least one new session in split pane",
                request="split_pane",
                session_id=self.session_id
            )
        return ItermSession(self._terminal, new_session)

    async def set_name(self, name: str) -> None:
        async with self._terminal.rpc("set_name", session_id=self.session_id):
            await self._session.async_set_name(name)

    async def get_variable(self, name: str) -> str:
        async with self._terminal.rpc("get_variable", session_id=self.session_id, variable=name):
            value = await self._session.async_get_variable(name)
        if value is None:
            raise ProtocolError(
                f"failed to get variable {name!r}: no value returned",
                request="get_variable",
                session_id=self.session_id
            )
        return str(value)

    async def activate(self, select_tab: bool = True, order_window_front: bool = True) -> None:
        async with self._terminal.rpc("activate_session", session_id=self.session_id):
            await self._session.async_activate(
                select_tab=select_tab,
                order_window_front=order_window_front
            )

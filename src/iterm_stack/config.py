# =============================================================================
# Configuration Loading
# =============================================================================
# A workspace file looks like:
#
#     id = "example"
#     directory = "~/code/example"
#
#     [sessions.setup]
#     script = "make deps"
#
#     [sessions."server:web"]
#     depends_on = ["sessions.setup"]
#     inject = "make run"
#
# TOML turns `[sessions.a.b]` into nested tables. Sessions are flattened back
# out so that `[sessions.a.b]` becomes its own session named "a.b".

from __future__ import annotations

import json
import re
import time
import tomllib
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from iterm_stack.errors import ConfigError

SESSION_FIELDS = ("script", "inject", "depends_on")
SESSIONS_PREFIX = "sessions."
GROUP_DELIMITER = ":"

# Defaults merged under the user's file
DEFAULT_CONFIG = {
    "harness": {
        "settle_time": 1.0,     # wait before typing into a fresh pane
        "poll_interval": 2.0,   # sentinel poll period
        "timeout": 0.0,         # per-script limit, 0 disables
    },
    "menu_items": [],
}

TOP_LEVEL_FIELDS = ("id", "directory", "sessions", "harness", "menu_items")


def strip_sessions_prefix(reference: str) -> str:
    """Map a `depends_on` entry to a session name ("sessions.a" -> "a")."""
    if reference.startswith(SESSIONS_PREFIX):
        return reference[len(SESSIONS_PREFIX):]
    return reference


@dataclass
class SessionDescriptor:
    name: str
    depends_on: list[str] = field(default_factory=list)
    script: str = ""
    inject: str = ""

    def group(self) -> str:
        """
        Layout group of this session.

        The group is the part of the name before the first ':'
        (``"server:web"`` -> ``"server"``). Names without ':' are their
        own group.
        """
        group, sep, _ = self.name.partition(GROUP_DELIMITER)
        if not sep:
            return self.name
        return group

    def dependencies(self) -> list[str]:
        return [strip_sessions_prefix(ref) for ref in self.depends_on]

    def validate(self) -> list[str]:
        problems = []
        if not self.script and not self.inject:
            problems.append(f"in session {self.name!r}: one of script or inject is required")
        elif self.script and self.inject:
            problems.append(f"in session {self.name!r}: script and inject are mutually exclusive")
        return problems


@dataclass
class HarnessOptions:
    settle_time: float = 1.0
    poll_interval: float = 2.0
    timeout: float = 0.0

    @property
    def has_timeout(self) -> bool:
        return self.timeout > 0


@dataclass
class WorkspaceConfig:
    id: str
    directory: str = ""
    sessions: dict[str, SessionDescriptor] = field(default_factory=dict)
    harness: HarnessOptions = field(default_factory=HarnessOptions)
    menu_items: list[str] = field(default_factory=list)

    def sessions_by_group(self) -> dict[str, list[SessionDescriptor]]:
        """Group -> sessions sorted by name; groups iterate in sorted order."""
        grouped: dict[str, list[SessionDescriptor]] = {}
        for session in self.sessions.values():
            grouped.setdefault(session.group(), []).append(session)
        return {
            group: sorted(grouped[group], key=lambda s: s.name)
            for group in sorted(grouped)
        }

    def validate(self, source: str = "<string>") -> None:
        if not isinstance(self.id, str) or not self.id:
            raise ConfigError('config field "id" is required', config_path=source)
        if not self.sessions:
            raise ConfigError(
                "must have at least one session config: `[sessions.<name>]`",
                config_path=source
            )

        problems = []
        for name in sorted(self.sessions):
            problems.extend(self.sessions[name].validate())
        if problems:
            raise ConfigError("; ".join(problems), config_path=source)


def extract_toml_error_context(error: tomllib.TOMLDecodeError, text: str) -> dict:
    """
    Extract line context from TOML parse error.

    Args:
        error: The TOMLDecodeError exception
        text: The TOML document that failed to parse

    Returns:
        Dict with line_number, line_content, and formatted_message
    """
    error_str = str(error)
    line_number = None
    line_content = None

    # Common formats: "line 15", "at line 15", "(line 15)"
    line_match = re.search(r'line\s+(\d+)', error_str, re.IGNORECASE)
    if line_match:
        line_number = int(line_match.group(1))

    if line_number:
        lines = text.splitlines()
        if 0 < line_number <= len(lines):
            line_content = lines[line_number - 1].rstrip()

    if line_number:
        formatted = f"Error on line {line_number}"
        if line_content:
            display_line = line_content[:50] + "..." if len(line_content) > 50 else line_content
            formatted += f": {display_line}"
        formatted += f"\n\nDetails: {error_str}"
    else:
        formatted = f"TOML parse error: {error_str}"

    return {
        "line_number": line_number,
        "line_content": line_content,
        "formatted_message": formatted,
        "raw_error": error_str
    }


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base dictionary."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _decode_session(path: str, fields: dict, source: str) -> SessionDescriptor:
    session = SessionDescriptor(name=path)

    for key in ("script", "inject"):
        if key in fields:
            if not isinstance(fields[key], str):
                raise ConfigError(
                    f'field "{key}" in sessions.{path} must be a string',
                    config_path=source
                )
            setattr(session, key, fields[key])

    if "depends_on" in fields:
        depends_on = fields["depends_on"]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ConfigError(
                f'field "depends_on" in sessions.{path} must be a list of strings',
                config_path=source
            )
        session.depends_on = list(depends_on)

    return session


def flatten_sessions(raw_sessions, source: str = "<string>") -> dict[str, SessionDescriptor]:
    """
    Turn the nested `sessions` tree into a flat name -> session mapping.

    Walks the tree with a work list. Keys that are session fields are
    decoded; any other key must hold a table, which is queued as the
    nested session ``<parent>.<child>``.
    """
    if not isinstance(raw_sessions, dict) or not raw_sessions:
        raise ConfigError(
            "must have at least one session config: `[sessions.<name>]`",
            config_path=source
        )

    sessions: dict[str, SessionDescriptor] = {}
    remaining = deque(raw_sessions.items())

    while remaining:
        path, node = remaining.popleft()

        if not isinstance(node, dict):
            raise ConfigError(f'session config "{path}" is not a table', config_path=source)
        if not node:
            raise ConfigError(f"empty session config section sessions.{path}", config_path=source)

        consumed = {}
        for key, value in node.items():
            if key in SESSION_FIELDS:
                consumed[key] = value
            elif isinstance(value, dict):
                remaining.append((f"{path}.{key}", value))
            else:
                raise ConfigError(f'unexpected field "{key}" in sessions.{path}', config_path=source)

        if consumed:
            sessions[path] = _decode_session(path, consumed, source)

    return sessions


def loads_config(text: str, source: str = "<string>") -> WorkspaceConfig:
    """Parse and validate a workspace config from TOML text."""
    try:
        raw = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        error_context = extract_toml_error_context(e, text)
        raise ConfigError(
            error_context["formatted_message"],
            config_path=source,
            line_number=error_context["line_number"],
            line_content=error_context["line_content"]
        ) from e

    for key in raw:
        if key not in TOP_LEVEL_FIELDS:
            logger.warning(
                "Ignoring unknown config field",
                operation="loads_config",
                status="ignored",
                config_path=source,
                field=key
            )

    merged = deep_merge(DEFAULT_CONFIG, raw)

    directory = merged.get("directory", "")
    if not isinstance(directory, str):
        raise ConfigError('config field "directory" must be a string', config_path=source)

    menu_items = merged.get("menu_items")
    if not isinstance(menu_items, list) or not all(isinstance(m, str) for m in menu_items):
        raise ConfigError('config field "menu_items" must be a list of strings', config_path=source)

    harness = merged.get("harness")
    if not isinstance(harness, dict):
        raise ConfigError('config section "harness" must be a table', config_path=source)
    options = {}
    for key, default in DEFAULT_CONFIG["harness"].items():
        value = harness.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f'field "{key}" in harness must be a number', config_path=source)
        options[key] = float(value)
    unknown_harness = [k for k in harness if k not in DEFAULT_CONFIG["harness"]]
    if unknown_harness:
        raise ConfigError(f'unexpected field "{unknown_harness[0]}" in harness', config_path=source)

    config = WorkspaceConfig(
        id=merged.get("id", ""),
        directory=directory,
        sessions=flatten_sessions(merged.get("sessions"), source),
        harness=HarnessOptions(**options),
        menu_items=list(menu_items),
    )
    config.validate(source)
    return config


def load_config(config_path: Path | str) -> WorkspaceConfig:
    """
    Load a workspace config from a TOML file.

    Raises:
        ConfigError: file missing or unreadable, bad TOML, or failed validation
    """
    config_path = Path(config_path).expanduser()
    start_time = time.perf_counter()
    logger.debug(
        "Loading config from path",
        operation="load_config",
        status="started",
        config_path=str(config_path)
    )

    try:
        text = config_path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read config file {config_path}: {e}", config_path=str(config_path)) from e

    config = loads_config(text, str(config_path))

    duration_ms = int((time.perf_counter() - start_time) * 1000)
    logger.debug(
        "Config loaded successfully",
        operation="load_config",
        status="success",
        config_path=str(config_path),
        workspace_id=config.id,
        metrics={"sessions_count": len(config.sessions), "duration_ms": duration_ms}
    )
    return config


def _toml_string(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes, except
    # that TOML has no surrogate pairs and also forbids a raw DEL
    return json.dumps(value, ensure_ascii=False).replace("\x7f", "\\u007f")


def dump_config(config: WorkspaceConfig) -> str:
    """Render a config back to TOML that `loads_config` reads as equal."""
    lines = [f"id = {_toml_string(config.id)}"]
    if config.directory:
        lines.append(f"directory = {_toml_string(config.directory)}")
    if config.menu_items:
        items = ", ".join(_toml_string(m) for m in config.menu_items)
        lines.append(f"menu_items = [{items}]")

    lines.append("")
    lines.append("[harness]")
    lines.append(f"settle_time = {float(config.harness.settle_time)!r}")
    lines.append(f"poll_interval = {float(config.harness.poll_interval)!r}")
    lines.append(f"timeout = {float(config.harness.timeout)!r}")

    for name in sorted(config.sessions):
        session = config.sessions[name]
        lines.append("")
        # Quoted so that "a.b" stays one session instead of a nested table
        lines.append(f"[sessions.{_toml_string(name)}]")
        if session.depends_on:
            refs = ", ".join(_toml_string(d) for d in session.depends_on)
            lines.append(f"depends_on = [{refs}]")
        if session.script:
            lines.append(f"script = {_toml_string(session.script)}")
        if session.inject:
            lines.append(f"inject = {_toml_string(session.inject)}")

    return "\n".join(lines) + "\n"

# =============================================================================
# Window Cache
# =============================================================================
# Remembers the last window created for each workspace id so a re-run can
# close the stale window before building a new one.

from __future__ import annotations

import errno
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from iterm_stack.errors import CacheError

CACHE_DIR_NAME = "iterm-stack-cache"
CACHE_FILE_NAME = "cache.json"


def default_cache_path() -> Path:
    """``$HOME/.cache/iterm-stack-cache/cache.json``."""
    home = os.environ.get("HOME") or str(Path.home())
    return Path(home) / ".cache" / CACHE_DIR_NAME / CACHE_FILE_NAME


@dataclass
class WindowCacheEntry:
    window_id: str = ""

    def to_json(self) -> dict:
        return {"WindowID": self.window_id}

    @classmethod
    def from_json(cls, data) -> "WindowCacheEntry":
        if not isinstance(data, dict):
            return cls()
        return cls(window_id=str(data.get("WindowID") or ""))


def atomic_write_file(path: Path, content: str) -> None:
    """
    Write file atomically using temp file → fsync → rename pattern.

    Args:
        path: Target file path
        content: Content to write

    Raises:
        OSError: If write fails (including disk full - errno.ENOSPC)
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temp file in same directory (for atomic rename)
    temp_fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(temp_fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.replace(temp_path, path)

    except OSError as e:
        try:
            os.unlink(temp_path)
        except OSError:
            pass

        if e.errno == errno.ENOSPC:
            raise OSError(f"Disk full - cannot write to {path}") from e
        raise


class WindowCache:
    """Single-file JSON store mapping workspace id to its last window.

    Not safe for concurrent writers; the launcher is the only one.
    """

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path is not None else default_cache_path()

    @classmethod
    def open(cls, path: Path | None = None) -> "WindowCache":
        """Open the cache, creating an empty one if missing or unreadable."""
        cache = cls(path)
        try:
            cache._read()
        except CacheError as e:
            logger.info(
                "Initializing window cache",
                operation="cache_open",
                status="bootstrap",
                file=str(cache.path),
                reason=e.message
            )
            try:
                atomic_write_file(cache.path, "{}")
            except OSError as write_error:
                raise CacheError(
                    f"cannot create cache file {cache.path}: {write_error}",
                    file=str(cache.path)
                ) from write_error
            cache._read()
        return cache

    def get(self, workspace_id: str) -> WindowCacheEntry:
        data = self._read()
        return WindowCacheEntry.from_json(data.get(workspace_id))

    def put(self, workspace_id: str, entry: WindowCacheEntry) -> None:
        data = self._read()
        data[workspace_id] = entry.to_json()
        try:
            atomic_write_file(self.path, json.dumps(data))
        except OSError as e:
            raise CacheError(
                f"cannot write cache file {self.path}: {e}",
                file=str(self.path)
            ) from e

        logger.debug(
            "Window cache updated",
            operation="cache_put",
            status="success",
            file=str(self.path),
            workspace_id=workspace_id,
            window_id=entry.window_id
        )

    def _read(self) -> dict:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except OSError as e:
            raise CacheError(f"cannot read cache file {self.path}: {e}", file=str(self.path)) from e
        except json.JSONDecodeError as e:
            raise CacheError(f"corrupt cache file {self.path}: {e}", file=str(self.path)) from e

        if not isinstance(data, dict):
            raise CacheError(f"corrupt cache file {self.path}: not a JSON object", file=str(self.path))
        return data

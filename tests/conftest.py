"""Shared fixtures: fake terminal, fast harness timings, throwaway cache."""

from __future__ import annotations

import pytest
from fakes import FakeTerminal

from iterm_stack.cache import WindowCache
from iterm_stack.config import HarnessOptions


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point HOME at a temp dir so the default cache path is throwaway."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def terminal() -> FakeTerminal:
    return FakeTerminal()


@pytest.fixture
def fast_options() -> HarnessOptions:
    return HarnessOptions(settle_time=0.0, poll_interval=0.01, timeout=0.0)


@pytest.fixture
def cache(tmp_path) -> WindowCache:
    return WindowCache.open(tmp_path / "cache" / "cache.json")

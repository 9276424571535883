"""Launch a declarative iTerm2 workspace: one window, grouped panes, dependency-ordered scripts."""

__version__ = "0.1.0"

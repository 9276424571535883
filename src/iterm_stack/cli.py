"""Command-line entry point: ``iterm-stack -c workspace.toml``."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
from loguru import logger

from iterm_stack.cache import WindowCache
from iterm_stack.config import load_config
from iterm_stack.errors import ErrorReport, StackError
from iterm_stack.logging_config import setup_logger
from iterm_stack.orchestrator import launch_workspace
from iterm_stack.terminal import ItermTerminal

EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


async def run(config_path: Path) -> ErrorReport:
    logger.info("Load config", operation="run", file=str(config_path))
    config = load_config(config_path)
    cache = WindowCache.open()

    terminal = await ItermTerminal.connect()
    try:
        return await launch_workspace(config, terminal, cache)
    finally:
        await terminal.close()


@click.command()
@click.option(
    "-c", "--config", "config_path",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Workspace config file (TOML)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug records to stderr")
def main(config_path, verbose):
    """Open an iTerm2 workspace window and run its sessions."""
    setup_logger(verbose=verbose)

    try:
        asyncio.run(run(config_path))
    except StackError as e:
        # bind, not kwargs: the message may quote config text containing braces
        logger.bind(
            operation="main",
            status="failed",
            error_type=e.error_type.value,
            **e.context
        ).error(e.message)
        raise SystemExit(EXIT_FATAL)
    except KeyboardInterrupt:
        logger.warning("Interrupted", operation="main", status="cancelled")
        raise SystemExit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()

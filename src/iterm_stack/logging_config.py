# =============================================================================
# Structured Logging Setup (JSONL format)
# =============================================================================

from __future__ import annotations

import json
import sys
import traceback
from contextvars import ContextVar
from pathlib import Path

import platformdirs
from loguru import logger

APP_NAME = "iterm-stack"

# Correlation ID for one launcher run
trace_id_var: ContextVar[str] = ContextVar('trace_id', default=None)


# Promoted out of "context" so one pane's history can be grepped across a run
PROMOTED_FIELDS = ("operation", "status", "trace_id", "metrics", "session", "workspace_id")


def json_sink(message):
    """
    Write one launcher record as a JSON line on stderr.

    Shape:
        {"timestamp", "level", "component", "operation", "operation_status",
         "trace_id", "session", "workspace_id", "message", "context",
         "metrics", "error"}

    ``component`` is the emitting module (``harness``, ``runner``, ...).
    ``session`` is null for records about the window as a whole.
    """
    record = message.record
    extra = record["extra"]
    log_entry = {
        "timestamp": record["time"].strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
        "level": record["level"].name.lower(),
        "component": (record["name"] or "").rpartition(".")[2],
        "operation": extra.get("operation", "unknown"),
        "operation_status": extra.get("status"),
        "trace_id": extra.get("trace_id") or trace_id_var.get(),
        "session": extra.get("session"),
        "workspace_id": extra.get("workspace_id"),
        "message": record["message"],
        "context": {k: v for k, v in extra.items() if k not in PROMOTED_FIELDS},
        "metrics": extra.get("metrics", {}),
        "error": None
    }

    if record["exception"]:
        exc_type, exc_value, exc_tb = record["exception"]
        log_entry["error"] = {
            "type": exc_type.__name__ if exc_type else "Unknown",
            "message": str(exc_value) if exc_value else "Unknown error",
            "traceback_lines": traceback.format_tb(exc_tb) if exc_tb else []
        }

    # context may carry Paths and enums
    sys.stderr.write(json.dumps(log_entry, default=str) + "\n")


def setup_logger(verbose: bool = False, log_to_file: bool = True):
    """
    Route launcher logs to stderr (JSONL) and to a rotating file.

    ``verbose`` lowers the stderr level to DEBUG, which adds per-pane layout
    and cd records. The file always keeps DEBUG.
    """
    logger.remove()

    logger.add(
        json_sink,
        level="DEBUG" if verbose else "INFO"
    )

    if log_to_file:
        # macOS: ~/Library/Logs/iterm-stack/
        # Linux: ~/.local/state/iterm-stack/log/
        log_dir = Path(platformdirs.user_log_dir(
            appname=APP_NAME,
            ensure_exists=True
        ))

        logger.add(
            str(log_dir / "launcher.jsonl"),
            format="{message}",
            serialize=True,
            rotation="10 MB",
            retention="7 days",
            compression="gz",
            level="DEBUG"
        )

    return logger

# =============================================================================
# Error Handling Types (StackError hierarchy + ErrorReport)
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from loguru import logger


class ErrorType(Enum):
    CONFIG_ERROR = "config_error"
    CACHE_ERROR = "cache_error"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_ERROR = "protocol_error"
    DEPENDENCY_ERROR = "dependency_error"
    SESSION_ERROR = "session_error"
    TIMEOUT_ERROR = "timeout_error"


class StackError(Exception):
    """Base class for every error the launcher raises."""

    error_type = ErrorType.CONFIG_ERROR
    fatal = True

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ConfigError(StackError):
    error_type = ErrorType.CONFIG_ERROR


class CacheError(StackError):
    error_type = ErrorType.CACHE_ERROR


class TransportError(StackError):
    """The control channel to the terminal failed (connect, send, receive)."""

    error_type = ErrorType.TRANSPORT_ERROR


class ProtocolError(StackError):
    """The terminal answered, but not with what was asked for."""

    error_type = ErrorType.PROTOCOL_ERROR


class DependencyError(StackError):
    error_type = ErrorType.DEPENDENCY_ERROR


class SessionError(StackError):
    """A single pane failed its script. Logged, never fatal."""

    error_type = ErrorType.SESSION_ERROR
    fatal = False

    def __init__(self, session: str, message: str, error_type: ErrorType | None = None, **context):
        super().__init__(message, session=session, **context)
        self.session = session
        if error_type is not None:
            self.error_type = error_type


@dataclass
class ErrorReport:
    errors: list[StackError] = field(default_factory=list)
    warnings: list[StackError] = field(default_factory=list)

    def add_error(self, error: StackError):
        self.errors.append(error)
        logger.bind(
            operation="error_report",
            status="error",
            error_type=error.error_type.value,
            **error.context
        ).error(error.message)

    def add_warning(self, error: StackError):
        self.warnings.append(error)
        logger.bind(
            operation="error_report",
            status="warning",
            error_type=error.error_type.value,
            **error.context
        ).warning(error.message)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def failed_sessions(self) -> list[str]:
        return [e.session for e in self.errors if isinstance(e, SessionError)]

    def log_summary(self, op_trace_id: str):
        """Log final summary of the run."""
        logger.info(
            "Operation complete",
            operation="error_report",
            status="complete",
            trace_id=op_trace_id,
            metrics={
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings)
            }
        )

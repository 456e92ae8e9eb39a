"""
Structured Logging - JSON logs with conversation context

Every log line carries the correlation, conversation and message ids of the
unit of work being processed, read from context variables so that values set
in a job or handler propagate across awaits.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
conversation_id_var: ContextVar[str] = ContextVar("conversation_id", default="")
message_id_var: ContextVar[str] = ContextVar("message_id", default="")


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StructuredLogger:
    """Logger that emits JSON entries with the current context attached."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def _get_context(self) -> Dict[str, str]:
        return {
            "correlation_id": correlation_id_var.get(),
            "conversation_id": conversation_id_var.get(),
            "message_id": message_id_var.get(),
        }

    def _format_message(self,
                        level: LogLevel,
                        message: str,
                        extra: Optional[Dict[str, Any]] = None) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "logger": self.name,
            "message": message,
            "context": self._get_context(),
        }

        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry, ensure_ascii=False, default=str)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._format_message(LogLevel.DEBUG, message, extra))

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.info(self._format_message(LogLevel.INFO, message, extra))

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._format_message(LogLevel.WARNING, message, extra))

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self.logger.error(self._format_message(LogLevel.ERROR, message, extra))

    def audit(self,
              action: str,
              resource: str,
              result: str,
              extra: Optional[Dict[str, Any]] = None):
        """Log an auditable state change (escalations, saved patterns)."""
        audit_data = {
            "action": action,
            "resource": resource,
            "result": result,
        }
        if extra:
            audit_data.update(extra)

        self.info(f"AUDIT: {action} on {resource}", audit_data)


class LogContext:
    """Helpers to set and clear the logging context."""

    @staticmethod
    def set_correlation_id(correlation_id: Optional[str] = None) -> str:
        """Set the correlation id, generating one if none is given."""
        if correlation_id is None:
            correlation_id = f"corr_{uuid.uuid4().hex[:12]}"
        correlation_id_var.set(correlation_id)
        return correlation_id

    @staticmethod
    def get_correlation_id() -> str:
        return correlation_id_var.get()

    @staticmethod
    def bind(conversation_id: Optional[str] = None, message_id: Optional[str] = None):
        """Bind conversation and message ids for the current task."""
        if conversation_id is not None:
            conversation_id_var.set(str(conversation_id))
        if message_id is not None:
            message_id_var.set(str(message_id))

    @staticmethod
    def get_conversation_id() -> str:
        return conversation_id_var.get()

    @staticmethod
    def get_message_id() -> str:
        return message_id_var.get()

    @staticmethod
    def clear_context():
        correlation_id_var.set("")
        conversation_id_var.set("")
        message_id_var.set("")


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger."""
    return StructuredLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once, at process start."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

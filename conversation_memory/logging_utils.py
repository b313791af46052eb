"""
Logging setup for the memory core.

Modules log through ``logging.getLogger(__name__)``. Records that concern
one conversation go through ``for_conversation`` so they carry its id,
both in the message prefix and as a ``conversation_id`` attribute.

``configure_logging`` is applied by ``ConversationMemory.create`` when
``MemoryConfig.log_level`` is set. It installs one handler on the
``conversation_memory`` logger, in plain text or one JSON object per line.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

LIBRARY_LOGGER = "conversation_memory"
LOG_FORMATS = ("text", "json")
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# LogRecord attributes that are not caller-supplied extras
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class ConversationJsonFormatter(logging.Formatter):
    """One JSON object per record, with the conversation id up front."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        conversation_id = getattr(record, "conversation_id", None)
        if conversation_id is not None:
            entry["conversation_id"] = conversation_id
        entry["message"] = record.getMessage()

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in entry or key.startswith("_"):
                continue
            entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    level: int | str, log_format: str = "text", stream: IO[str] | None = None
) -> logging.Logger:
    """Attach the library's handler to the ``conversation_memory`` logger.

    Calling it again replaces the handler it installed earlier; handlers
    added by the host application are left alone.
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {log_format!r}")

    logger = logging.getLogger(LIBRARY_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_conversation_memory", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._conversation_memory = True
    if log_format == "json":
        handler.setFormatter(ConversationJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger


class ConversationLoggerAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[conversation_id]`` and tags the record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return f"[{self.extra['conversation_id']}] {msg}", kwargs


def for_conversation(logger: logging.Logger, conversation_id: str) -> ConversationLoggerAdapter:
    return ConversationLoggerAdapter(logger, {"conversation_id": conversation_id})

"""
Structured Logging Utilities for MedSync
Provides sync-session id propagation and structured log output
"""

import logging
import json
import sys
from contextvars import ContextVar
from datetime import datetime, UTC
from typing import Optional

# Relay session id of the transfer currently driving this task
sync_session_ctx: ContextVar[str] = ContextVar("sync_session_id", default="")

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class StructuredLogFormatter(logging.Formatter):
    """
    JSON formatter for structured logging with sync session propagation

    Usage:
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredLogFormatter())
        logger.addHandler(handler)
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with session_id"""
        session_id = sync_session_ctx.get()

        log_obj = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if session_id:
            log_obj["session_id"] = session_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Fields passed via logger.info(..., extra={"path": "poll"})
        for key in ("path", "role", "status"):
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)

        return json.dumps(log_obj)


def configure_logging(level: Optional[str] = None, structured: Optional[bool] = None) -> None:
    """
    Configure the root logger once for CLI and server entry points

    Args:
        level: Logging level name, defaults to settings.log_level
        structured: JSON output if True, defaults to settings.log_json
    """
    from medsync.config import get_settings

    settings = get_settings()
    level = (level or settings.log_level).upper()
    structured = settings.log_json if structured is None else structured

    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(StructuredLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # aiortc/aioice are chatty at INFO
    for noisy in ("aioice", "aiortc"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, root.level))

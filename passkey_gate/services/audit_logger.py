"""Audit logger: structured security events mirrored into the log store."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from ..models.internal_models import LOG_LEVELS, LogEntry
from .log_store import LogStore

logger = structlog.get_logger()

_CONSOLE_METHODS = {
    "debug": "debug",
    "info": "info",
    "warn": "warning",
    "error": "error",
}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AuditLogger:
    """
    Best-effort event writer.

    In interactive mode events only go to the console. Otherwise they are
    appended to the log store; a failed append is reported locally and never
    raised to the caller.
    """

    def __init__(self, log_store: Optional[LogStore], interactive: bool = False):
        self.log_store = log_store
        self.interactive = interactive

    async def log(
        self,
        site: str,
        level: str,
        message: str,
        path: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[LogEntry]:
        if level not in LOG_LEVELS:
            level = "info"

        if self.interactive or self.log_store is None:
            getattr(logger, _CONSOLE_METHODS[level])(
                message, site=site, path=path, metadata=metadata
            )
            return None

        try:
            return await self.log_store.append(LogEntry(
                site=site,
                level=level,
                message=message,
                timestamp=utc_timestamp(),
                path=path,
                user_agent=user_agent,
                ip=ip,
                metadata=metadata,
            ))
        except Exception as e:
            logger.error("Failed to persist log", site=site, message=message, error=str(e))
            return None

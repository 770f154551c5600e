"""
Event submission, log ingestion and log browsing endpoints.
"""

import asyncio
import hmac
from typing import List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from ..models.api_models import (
    ClientEvent,
    EventBatchResponse,
    IngestLogEntry,
    LogEntryModel,
    LogListResponse,
)
from ..models.internal_models import LogEntry, User
from ..observability import record_log_write_metrics, trace_function
from ..services.audit_logger import utc_timestamp
from .dependencies import Services, api_error, get_services, require_user, rp_id_for

logger = structlog.get_logger()
router = APIRouter(prefix="/api", tags=["logs"])


async def _append_all(services: Services, entries: List[LogEntry], source: str) -> int:
    """Write every entry independently; returns the number of failed writes."""
    results = await asyncio.gather(
        *(services.log_store.append(entry) for entry in entries),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, Exception)]
    for failure in failures:
        logger.error("Log write failed", source=source, error=str(failure))
    record_log_write_metrics(source, len(results) - len(failures), len(failures))
    return len(failures)


def _batch_response(count: int, failed: int) -> JSONResponse:
    body = EventBatchResponse(ok=failed == 0, count=count - failed, failed=failed)
    return JSONResponse(status_code=200 if failed == 0 else 502, content=body.model_dump())


@router.post("/events", response_model=EventBatchResponse)
@trace_function("submit_events_endpoint")
async def submit_events(
    events: Union[List[ClientEvent], ClientEvent],
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Store a batch of client events under the requesting site."""
    batch = events if isinstance(events, list) else [events]
    site = rp_id_for(request, services.settings)

    entries = []
    for event in batch:
        metadata = {"source": "client", "sessionId": event.sessionId}
        if event.device:
            metadata["device"] = event.device.model_dump(exclude_none=True)
        metadata.update(event.data or {})
        entries.append(LogEntry(
            site=site,
            level="info",
            message=event.event,
            timestamp=event.timestamp or utc_timestamp(),
            path=event.url,
            user_agent=request.headers.get("User-Agent"),
            metadata=metadata,
        ))

    failed = await _append_all(services, entries, "client")
    return _batch_response(len(entries), failed)


def _check_ingest_key(request: Request, services: Services) -> None:
    api_key = services.settings.log_api_key
    if not api_key:
        if services.settings.interactive_mode:
            return
        raise api_error(request, 401, "InvalidApiKey", "Log ingestion is not configured")

    supplied = request.headers.get("Authorization", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {api_key}".encode("utf-8")):
        raise api_error(request, 401, "InvalidApiKey", "Invalid API key")


@router.post("/logs/ingest", response_model=EventBatchResponse)
@trace_function("ingest_logs_endpoint")
async def ingest_logs(
    payload: Union[List[IngestLogEntry], IngestLogEntry],
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Accept log entries from other services.

    Every entry is validated before anything is written, so a bad entry
    rejects the whole batch.
    """
    _check_ingest_key(request, services)

    batch = payload if isinstance(payload, list) else [payload]
    entries = [
        LogEntry(
            site=item.site,
            level=item.level,
            message=item.message,
            timestamp=item.timestamp or utc_timestamp(),
            path=item.path,
            user_agent=item.userAgent,
            ip=item.ip,
            metadata=item.metadata,
        )
        for item in batch
    ]

    failed = await _append_all(services, entries, "ingest")
    return _batch_response(len(entries), failed)


@router.get("/logs", response_model=LogListResponse)
async def list_logs(
    request: Request,
    site: Optional[str] = Query(None),
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    cursor: Optional[str] = Query(None),
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
) -> LogListResponse:
    """Page through stored log entries, most recent first, plus the known sites."""
    try:
        page, sites = await asyncio.gather(
            services.log_store.list(site=site, date=date, limit=limit, cursor=cursor),
            services.log_store.list_sites(),
        )
    except ValueError as e:
        raise api_error(request, 400, "ValidationError", str(e))

    return LogListResponse(
        entries=[LogEntryModel.from_entry(entry) for entry in page.entries],
        sites=sites,
        cursor=page.cursor,
        hasMore=page.has_more,
    )

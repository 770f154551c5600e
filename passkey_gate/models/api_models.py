"""Pydantic models for API requests and responses."""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .internal_models import Credential, LogEntry

LogLevel = Literal["debug", "info", "warn", "error"]

ISO_DATE_PREFIX = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}")


def check_iso_timestamp(value: Optional[str]) -> Optional[str]:
    """Accept ISO-8601 timestamps in extended form; the date prefix names the log partition."""
    if value is None:
        return value
    if not ISO_DATE_PREFIX.match(value):
        raise ValueError("timestamp must be ISO-8601 starting with YYYY-MM-DD")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("timestamp must be ISO-8601")
    return value


class RegistrationOptionsRequest(BaseModel):
    """Request model for the register-options endpoint."""

    username: str = Field(..., description="Requested username; trimmed and lower-cased server side")


class VerifyResponse(BaseModel):
    """Result of a registration or login verification."""

    verified: bool
    userId: Optional[str] = None


class OkResponse(BaseModel):
    ok: bool = True


class SessionResponse(BaseModel):
    """Current session as seen by the layout loader."""

    user: Optional[Dict[str, str]] = None
    interactive: bool = False


class CredentialSummary(BaseModel):
    """Public view of a stored credential."""

    id: str
    deviceType: str
    backedUp: bool
    transports: List[str]
    createdAt: int
    lastUsedAt: Optional[int] = None

    @classmethod
    def from_credential(cls, credential: Credential) -> "CredentialSummary":
        return cls(
            id=credential.id,
            deviceType=credential.device_type,
            backedUp=credential.backed_up,
            transports=list(credential.transports),
            createdAt=credential.created_at,
            lastUsedAt=credential.last_used_at,
        )


class DeleteCredentialRequest(BaseModel):
    id: str = Field(..., min_length=1, description="Credential ID to delete")


class DeviceContext(BaseModel):
    browser: Optional[str] = None
    os: Optional[str] = None
    deviceType: Optional[str] = None
    screenSize: Optional[str] = None
    language: Optional[str] = None


class ClientEvent(BaseModel):
    """Event buffered and flushed by the browser."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1)
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None
    url: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    device: Optional[DeviceContext] = None

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp(cls, v):
        return check_iso_timestamp(v)


class EventBatchResponse(BaseModel):
    ok: bool
    count: int
    failed: int = 0


class IngestLogEntry(BaseModel):
    """Server-to-server log submission."""

    site: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    level: LogLevel = "info"
    timestamp: Optional[str] = None
    path: Optional[str] = None
    userAgent: Optional[str] = None
    ip: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('site')
    @classmethod
    def validate_site(cls, v):
        if "/" in v or v in (".", ".."):
            raise ValueError('site must be a plain name without "/"')
        return v

    @field_validator('timestamp')
    @classmethod
    def validate_timestamp(cls, v):
        return check_iso_timestamp(v)


class LogEntryModel(BaseModel):
    id: str
    site: str
    level: LogLevel
    message: str
    timestamp: str
    path: Optional[str] = None
    userAgent: Optional[str] = None
    ip: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_entry(cls, entry: LogEntry) -> "LogEntryModel":
        return cls(**entry.to_dict())


class LogListResponse(BaseModel):
    entries: List[LogEntryModel]
    sites: List[str]
    cursor: Optional[str] = None
    hasMore: bool = False


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str = "1.0.0"
    backend: str


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    correlation_id: str = Field(..., description="Request correlation ID for tracing")
    timestamp: datetime = Field(..., description="Error timestamp")

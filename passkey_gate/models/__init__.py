"""Data models for the passkey gate service."""

from .api_models import (
    ClientEvent,
    CredentialSummary,
    ErrorResponse,
    EventBatchResponse,
    HealthResponse,
    IngestLogEntry,
    LogListResponse,
    SessionResponse,
    VerifyResponse,
)
from .internal_models import (
    Credential,
    LogEntry,
    LogPage,
    SessionIdentity,
    User,
)

__all__ = [
    "ClientEvent",
    "CredentialSummary",
    "ErrorResponse",
    "EventBatchResponse",
    "HealthResponse",
    "IngestLogEntry",
    "LogListResponse",
    "SessionResponse",
    "VerifyResponse",
    "Credential",
    "LogEntry",
    "LogPage",
    "SessionIdentity",
    "User",
]

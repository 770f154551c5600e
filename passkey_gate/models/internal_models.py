"""Internal data models for the passkey gate service."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass
class User:
    """Enrolled identity. The username is stored already normalized."""

    id: str
    username: str


@dataclass
class Credential:
    """Passkey credential bound to a user."""

    id: str  # base64url credential id issued by the authenticator
    user_id: str
    webauthn_user_id: str
    public_key: bytes
    counter: int = 0
    device_type: str = "singleDevice"
    backed_up: bool = False
    transports: List[str] = field(default_factory=list)
    created_at: int = 0
    last_used_at: Optional[int] = None

    def __post_init__(self):
        """Drop repeated transport hints while keeping their order."""
        self.transports = list(dict.fromkeys(self.transports or []))
        if self.counter < 0:
            raise ValueError(f"Counter must be non-negative, got {self.counter}")

    def copy(self) -> "Credential":
        return replace(self, transports=list(self.transports))


@dataclass
class SessionIdentity:
    """Identity recovered from a valid session token."""

    user_id: str
    expires_at: int


@dataclass
class LogEntry:
    """Write-once audit/event record."""

    site: str
    level: str
    message: str
    timestamp: str  # ISO-8601; the first 10 characters are the partition date
    id: Optional[str] = None
    path: Optional[str] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.level}")

    @property
    def date(self) -> str:
        return self.timestamp[:10]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the stored JSON field names, omitting unset optionals."""
        data: Dict[str, Any] = {
            "id": self.id,
            "site": self.site,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        optional = {
            "path": self.path,
            "userAgent": self.user_agent,
            "ip": self.ip,
            "metadata": self.metadata,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
        """Build an entry from its stored form; raises on missing or invalid fields."""
        if not isinstance(data, dict):
            raise ValueError("Log entry must be a JSON object")
        for key in ("id", "site", "level", "message", "timestamp"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"Log entry field '{key}' missing or not a string")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("Log entry metadata must be an object")
        return cls(
            id=data["id"],
            site=data["site"],
            level=data["level"],
            message=data["message"],
            timestamp=data["timestamp"],
            path=data.get("path"),
            user_agent=data.get("userAgent"),
            ip=data.get("ip"),
            metadata=metadata,
        )


@dataclass
class LogPage:
    """One page of a log listing, most recent entry first."""

    entries: List[LogEntry]
    cursor: Optional[str] = None
    has_more: bool = False

"""Client modules for storage and WebAuthn integrations."""

from .object_store import (
    InvalidCursorError,
    MemoryObjectStore,
    ObjectExistsError,
    ObjectListing,
    ObjectNotFoundError,
    ObjectStore,
    ObjectStoreError,
    StorageUnavailableError,
)
from .sqlite_client import SQLiteDatabase
from .supabase_client import SupabaseClient, SupabaseObjectStore
from .webauthn_client import (
    AuthenticationVerification,
    CeremonyError,
    RegistrationVerification,
    WebAuthnCeremony,
)

__all__ = [
    "InvalidCursorError",
    "MemoryObjectStore",
    "ObjectExistsError",
    "ObjectListing",
    "ObjectNotFoundError",
    "ObjectStore",
    "ObjectStoreError",
    "StorageUnavailableError",
    "SQLiteDatabase",
    "SupabaseClient",
    "SupabaseObjectStore",
    "AuthenticationVerification",
    "CeremonyError",
    "RegistrationVerification",
    "WebAuthnCeremony",
]

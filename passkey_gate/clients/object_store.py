"""Key/blob object storage abstraction and the in-memory implementation."""

import asyncio
import base64
import binascii
import bisect
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class ObjectStoreError(Exception):
    """Base exception for object storage errors."""
    pass


class StorageUnavailableError(ObjectStoreError):
    """Raised when the backing store cannot be reached or rejects a call."""
    pass


class ObjectNotFoundError(ObjectStoreError):
    """Raised when reading a path that holds no object."""
    pass


class ObjectExistsError(ObjectStoreError):
    """Raised when a create-only write targets an existing path."""
    pass


class InvalidCursorError(ObjectStoreError, ValueError):
    """Raised when a listing cursor cannot be decoded."""
    pass


@dataclass
class ObjectListing:
    """A page of object paths from a recursive prefix listing."""

    paths: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False


def encode_cursor(path: str) -> str:
    """Encode the last returned path as an opaque continuation token."""
    return base64.urlsafe_b64encode(path.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> str:
    padding = "=" * (-len(cursor) % 4)
    try:
        return base64.b64decode(cursor + padding, altchars=b"-_", validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}") from e


def paginate(sorted_paths: List[str], limit: int, cursor: Optional[str] = None) -> ObjectListing:
    """
    Slice a lexicographically sorted path list after the cursor position.

    The cursor is keyset based (the last path handed out), so objects
    written between calls never shift a page boundary into a duplicate.
    """
    if limit <= 0:
        raise ValueError(f"Listing limit must be positive, got {limit}")

    start = 0
    if cursor:
        start = bisect.bisect_right(sorted_paths, decode_cursor(cursor))

    page = sorted_paths[start:start + limit]
    has_more = start + limit < len(sorted_paths)
    next_cursor = encode_cursor(page[-1]) if page and has_more else None
    return ObjectListing(paths=page, cursor=next_cursor, has_more=has_more)


def folder_of(path: str, prefix: str) -> Optional[str]:
    """Return the first directory-like segment under prefix, with trailing separator."""
    if not path.startswith(prefix):
        return None
    remainder = path[len(prefix):]
    if "/" not in remainder:
        return None
    return prefix + remainder.split("/", 1)[0] + "/"


class ObjectStore(Protocol):
    """Durable key/blob service used for logs and the enrolled dataset."""

    async def put(self, path: str, data: bytes, content_type: str = "application/json",
                  overwrite: bool = False) -> None:
        ...

    async def get(self, path: str) -> bytes:
        ...

    async def list(self, prefix: str, limit: int, cursor: Optional[str] = None) -> ObjectListing:
        ...

    async def list_folders(self, prefix: str) -> List[str]:
        ...


class MemoryObjectStore:
    """
    Process-local object store.

    Used in interactive mode when no Supabase bucket is configured, and in
    tests. Contents are lost when the process exits.
    """

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, path: str, data: bytes, content_type: str = "application/json",
                  overwrite: bool = False) -> None:
        async with self._lock:
            if not overwrite and path in self._objects:
                raise ObjectExistsError(f"Object already exists: {path}")
            self._objects[path] = bytes(data)
        logger.debug(f"Stored object {path} ({len(data)} bytes)")

    async def get(self, path: str) -> bytes:
        try:
            return self._objects[path]
        except KeyError:
            raise ObjectNotFoundError(f"No object at {path}") from None

    async def list(self, prefix: str, limit: int, cursor: Optional[str] = None) -> ObjectListing:
        paths = sorted(p for p in self._objects if p.startswith(prefix))
        return paginate(paths, limit, cursor)

    async def list_folders(self, prefix: str) -> List[str]:
        folders = {folder_of(p, prefix) for p in self._objects}
        return sorted(f for f in folders if f)

"""Supabase client and the Supabase Storage backed object store."""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from .object_store import (
    ObjectExistsError,
    ObjectListing,
    ObjectNotFoundError,
    StorageUnavailableError,
    decode_cursor,
    paginate,
)

logger = logging.getLogger(__name__)

# Page size used when walking bucket folders.
LIST_PAGE_SIZE = 1000


class SupabaseClient:
    """Client for Supabase operations."""

    def __init__(self, url: str, key: str):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = url
        self._key = key

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    def bucket(self, name: str):
        """Return the storage proxy for a bucket."""
        return self.client.storage.from_(name)


def _is_missing(error: Exception) -> bool:
    text = str(error).lower()
    return "not found" in text or "404" in text


def _is_duplicate(error: Exception) -> bool:
    text = str(error).lower()
    return "already exists" in text or "duplicate" in text or "409" in text


class SupabaseObjectStore:
    """
    Object store over a Supabase Storage bucket.

    The storage API is blocking, so each call runs in a worker thread and
    never holds up other requests. Listings are folder based, so a recursive
    prefix listing walks the folders in path order, resuming at the cursor
    and stopping once a page is filled.
    """

    def __init__(self, client: SupabaseClient, bucket: str):
        self.client = client
        self.bucket_name = bucket

    @property
    def _bucket(self):
        return self.client.bucket(self.bucket_name)

    async def put(self, path: str, data: bytes, content_type: str = "application/json",
                  overwrite: bool = False) -> None:
        file_options = {
            "content-type": content_type,
            "upsert": "true" if overwrite else "false",
        }
        try:
            await asyncio.to_thread(self._bucket.upload, path, data, file_options)
        except Exception as e:
            if not overwrite and _is_duplicate(e):
                raise ObjectExistsError(f"Object already exists: {path}") from e
            logger.error(f"Storage error writing {path}: {e}")
            raise StorageUnavailableError(f"Failed to write {path}: {e}") from e

    async def get(self, path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._bucket.download, path)
        except Exception as e:
            if _is_missing(e):
                raise ObjectNotFoundError(f"No object at {path}") from e
            logger.error(f"Storage error reading {path}: {e}")
            raise StorageUnavailableError(f"Failed to read {path}: {e}") from e

    async def list(self, prefix: str, limit: int, cursor: Optional[str] = None) -> ObjectListing:
        after = decode_cursor(cursor) if cursor else None
        folder = prefix.rpartition("/")[0]
        paths = await asyncio.to_thread(self._walk, folder, prefix, after, limit + 1)
        logger.debug(f"Listed {len(paths)} objects under {prefix!r}")
        return paginate(paths, limit, cursor)

    async def list_folders(self, prefix: str) -> List[str]:
        folder = prefix.rstrip("/")
        entries = await asyncio.to_thread(self._list_folder, folder)
        return sorted(
            f"{folder}/{entry['name']}/" if folder else f"{entry['name']}/"
            for entry in entries
            if entry.get("id") is None and entry.get("name")
        )

    def _list_folder(self, folder: str) -> List[Dict[str, Any]]:
        """Return every entry directly under folder, following offset pages."""
        entries: List[Dict[str, Any]] = []
        offset = 0
        while True:
            options = {
                "limit": LIST_PAGE_SIZE,
                "offset": offset,
                "sortBy": {"column": "name", "order": "asc"},
            }
            try:
                page = self._bucket.list(folder, options)
            except Exception as e:
                logger.error(f"Storage error listing {folder!r}: {e}")
                raise StorageUnavailableError(f"Failed to list {folder!r}: {e}") from e
            entries.extend(page)
            if len(page) < LIST_PAGE_SIZE:
                return entries
            offset += LIST_PAGE_SIZE

    def _walk(self, folder: str, prefix: str, after: Optional[str], limit: int) -> List[str]:
        """
        Collect up to limit object paths under prefix that sort after the cursor path.

        Children are visited in path order (a folder sorts as its name plus
        "/"), so the walk yields paths already sorted. Folders that lie wholly
        before the cursor or outside the prefix are never listed, and the walk
        stops as soon as limit paths are found.
        """
        paths: List[str] = []
        self._collect(folder, prefix, after, limit, paths)
        return paths

    def _collect(self, folder: str, prefix: str, after: Optional[str], limit: int,
                 paths: List[str]) -> None:
        children = []
        for entry in self._list_folder(folder):
            name = entry.get("name")
            if not name:
                continue
            full = f"{folder}/{name}" if folder else name
            # folder entries carry no id
            if entry.get("id") is None:
                children.append((full + "/", True))
            else:
                children.append((full, False))

        for key, is_folder in sorted(children):
            if len(paths) >= limit:
                return
            if is_folder:
                if not (key.startswith(prefix) or prefix.startswith(key)):
                    continue
                if after is not None and key < after and not after.startswith(key):
                    continue
                self._collect(key[:-1], prefix, after, limit, paths)
            elif key.startswith(prefix) and (after is None or key > after):
                paths.append(key)

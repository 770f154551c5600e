"""
Append-only log store partitioned by site and date.

Each entry is one immutable JSON object at ``{root}{site}/{date}/{id}.json``
where date is the first 10 characters of the entry timestamp.
"""

import asyncio
import json
import logging
import re
import secrets
import time
from dataclasses import replace
from typing import List, Optional

from ..clients.object_store import ObjectStore
from ..models.internal_models import LogEntry, LogPage

logger = logging.getLogger(__name__)

DEFAULT_LOG_ROOT = "logs/"
DEFAULT_PAGE_SIZE = 50

PARTITION_DATE = re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$")


def generate_log_id() -> str:
    """Millisecond time prefix plus 48 random bits."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def validate_site(site: str) -> str:
    if not site or "/" in site or site in (".", ".."):
        raise ValueError(f"Invalid site name: {site!r}")
    return site


class LogStore:
    """Writes log entries as individual objects and reads them back in pages."""

    def __init__(self, object_store: ObjectStore, root: str = DEFAULT_LOG_ROOT,
                 page_size: int = DEFAULT_PAGE_SIZE):
        self.object_store = object_store
        self.root = root if root.endswith("/") else root + "/"
        self.page_size = page_size

    def object_path(self, entry: LogEntry) -> str:
        return f"{self.root}{entry.site}/{entry.date}/{entry.id}.json"

    async def append(self, entry: LogEntry) -> LogEntry:
        """Assign an id and durably write the entry; returns the stored entry."""
        validate_site(entry.site)
        if not PARTITION_DATE.match(entry.date):
            raise ValueError(f"Timestamp does not start with a YYYY-MM-DD date: {entry.timestamp!r}")

        stored = replace(entry, id=generate_log_id())
        body = json.dumps(stored.to_dict(), default=str).encode("utf-8")
        await self.object_store.put(self.object_path(stored), body)
        return stored

    def _prefix(self, site: Optional[str], date: Optional[str]) -> str:
        prefix = self.root
        if site:
            prefix += f"{validate_site(site)}/"
            if date:
                prefix += f"{date}/"
        return prefix

    async def _read_entry(self, path: str) -> Optional[LogEntry]:
        try:
            raw = await self.object_store.get(path)
            return LogEntry.from_dict(json.loads(raw))
        except Exception as e:
            logger.warning(f"Skipping unreadable log object {path}: {e}")
            return None

    async def list(
        self,
        site: Optional[str] = None,
        date: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> LogPage:
        """
        List one page of entries, most recent first.

        The date filter only applies together with a site. ``limit`` bounds
        the number of objects listed; unreadable objects are skipped, so a
        page may hold fewer entries than ``limit``.
        """
        listing = await self.object_store.list(
            self._prefix(site, date), limit or self.page_size, cursor
        )

        results = await asyncio.gather(*(self._read_entry(p) for p in listing.paths))
        entries: List[LogEntry] = [entry for entry in results if entry is not None]
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)

        return LogPage(entries=entries, cursor=listing.cursor, has_more=listing.has_more)

    async def list_sites(self) -> List[str]:
        folders = await self.object_store.list_folders(self.root)
        sites = {
            folder[len(self.root):] if folder.startswith(self.root) else folder
            for folder in folders
        }
        return sorted(s.rstrip("/") for s in sites if s.rstrip("/"))

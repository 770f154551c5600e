"""
Enrolled credential set for the restricted backend.

The set is a versioned JSON document provisioned out-of-band:

    {"version": 1,
     "users": [{"id": "...", "username": "..."}],
     "credentials": [{"id": "...", "userId": "...", "webAuthnUserId": "...",
                      "publicKey": "<base64url>", "counter": 0,
                      "deviceType": "singleDevice", "backedUp": false,
                      "transports": ["internal"], "createdAt": 0,
                      "lastUsedAt": null}]}
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..clients.object_store import ObjectNotFoundError, ObjectStore
from ..clients.webauthn_client import decode_public_key, encode_public_key
from ..models.internal_models import Credential, User

logger = logging.getLogger(__name__)


class EnrolledDatasetError(Exception):
    """Raised when the enrolled dataset exists but cannot be parsed."""
    pass


@dataclass
class EnrolledDataset:
    """In-memory form of the enrolled set."""

    version: int = 0
    users: Dict[str, User] = field(default_factory=dict)
    credentials: Dict[str, Credential] = field(default_factory=dict)


def credential_from_record(record: Dict[str, Any]) -> Credential:
    return Credential(
        id=record["id"],
        user_id=record["userId"],
        webauthn_user_id=record.get("webAuthnUserId") or record["userId"],
        public_key=decode_public_key(record["publicKey"]),
        counter=int(record.get("counter") or 0),
        device_type=record.get("deviceType") or "singleDevice",
        backed_up=bool(record.get("backedUp", False)),
        transports=list(record.get("transports") or []),
        created_at=int(record.get("createdAt") or 0),
        last_used_at=record.get("lastUsedAt"),
    )


def credential_to_record(credential: Credential) -> Dict[str, Any]:
    return {
        "id": credential.id,
        "userId": credential.user_id,
        "webAuthnUserId": credential.webauthn_user_id,
        "publicKey": encode_public_key(credential.public_key),
        "counter": credential.counter,
        "deviceType": credential.device_type,
        "backedUp": credential.backed_up,
        "transports": list(credential.transports),
        "createdAt": credential.created_at,
        "lastUsedAt": credential.last_used_at,
    }


def parse_dataset(raw: bytes) -> EnrolledDataset:
    """Parse the JSON document; any structural problem is an EnrolledDatasetError."""
    try:
        document = json.loads(raw)
        users = [User(id=u["id"], username=u["username"]) for u in document.get("users", [])]
        credentials = [credential_from_record(c) for c in document.get("credentials", [])]
        version = int(document.get("version", 1))
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise EnrolledDatasetError(f"Malformed enrolled dataset: {e}") from e

    return EnrolledDataset(
        version=version,
        users={u.id: u for u in users},
        credentials={c.id: c for c in credentials},
    )


def serialize_dataset(dataset: EnrolledDataset) -> bytes:
    document = {
        "version": dataset.version,
        "users": [{"id": u.id, "username": u.username} for u in dataset.users.values()],
        "credentials": [credential_to_record(c) for c in dataset.credentials.values()],
    }
    return json.dumps(document, indent=2).encode("utf-8")


class FileDatasetSource:
    """Dataset bundled with the deployment as a local file."""

    def __init__(self, path: str):
        self.path = path

    async def load(self) -> Optional[bytes]:
        if not os.path.exists(self.path):
            return None
        return await asyncio.to_thread(self._read)

    def _read(self) -> bytes:
        with open(self.path, "rb") as handle:
            return handle.read()


class ObjectStoreDatasetSource:
    """Dataset kept in the durable object store."""

    def __init__(self, store: ObjectStore, path: str):
        self.store = store
        self.path = path

    async def load(self) -> Optional[bytes]:
        try:
            return await self.store.get(self.path)
        except ObjectNotFoundError:
            return None


class EnrolledSetCache:
    """
    Process-local copy of the enrolled set, populated once on first access.

    Concurrent first accesses wait on the same lock and observe the same
    populated dataset; the source is read at most once per process.
    """

    def __init__(self, source):
        self.source = source
        self._dataset: Optional[EnrolledDataset] = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._dataset is not None

    async def get(self) -> EnrolledDataset:
        if self._dataset is not None:
            return self._dataset
        async with self._lock:
            if self._dataset is None:
                self._dataset = await self._load()
        return self._dataset

    async def _load(self) -> EnrolledDataset:
        raw = await self.source.load()
        if raw is None:
            logger.warning(f"No enrolled dataset found at {self.source.path}; starting empty")
            return EnrolledDataset()
        dataset = parse_dataset(raw)
        logger.info(
            f"Loaded enrolled dataset v{dataset.version}: "
            f"{len(dataset.users)} users, {len(dataset.credentials)} credentials"
        )
        return dataset

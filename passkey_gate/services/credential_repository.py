"""
Credential repository with two interchangeable backends.

- MutableCredentialRepository: SQLite, full read/write. Used in interactive
  mode where enrollment is permitted.
- RestrictedCredentialRepository: serves the precomputed enrolled set. Writes
  follow a configured policy (reject, ignore or persist to the object store).

Both return the same User/Credential shapes so callers never branch on the
backend. The backend is chosen once at startup by build_credential_repository.
"""

import asyncio
import json
import logging
import time
from typing import List, Optional, Protocol

import aiosqlite

from ..clients.object_store import ObjectStore, StorageUnavailableError
from ..clients.sqlite_client import SQLiteDatabase
from ..clients.webauthn_client import decode_public_key, encode_public_key
from ..models.internal_models import Credential, User
from .enrolled_dataset import (
    EnrolledSetCache,
    FileDatasetSource,
    ObjectStoreDatasetSource,
    serialize_dataset,
)

logger = logging.getLogger(__name__)

WRITE_POLICIES = ("reject", "ignore", "persist")


class CredentialRepositoryError(Exception):
    """Base exception for credential repository errors."""
    pass


class PolicyDeniedError(CredentialRepositoryError):
    """Raised when a write is not permitted by the active backend."""
    pass


class CredentialNotFoundError(CredentialRepositoryError):
    """Raised when mutating a credential that does not exist."""
    pass


class UserExistsError(CredentialRepositoryError, ValueError):
    """Raised when creating a user whose id or username is taken."""
    pass


class CredentialExistsError(CredentialRepositoryError):
    """Raised when saving a credential whose id is already stored."""
    pass


class WriteIgnoredError(CredentialRepositoryError):
    """Raised when the ignore policy drops a delete the caller asked for."""
    pass


class CounterRegressionError(CredentialRepositoryError):
    """Raised when a signature counter would move backwards."""

    def __init__(self, credential_id: str, stored: int, received: int):
        super().__init__(
            f"Signature counter for {credential_id} went from {stored} to {received}"
        )
        self.credential_id = credential_id
        self.stored = stored
        self.received = received


def _now() -> int:
    return int(time.time())


class CredentialRepository(Protocol):
    """Operations shared by every backend."""

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def create_user(self, user_id: str, username: str) -> User: ...

    async def get_credential(self, credential_id: str) -> Optional[Credential]: ...

    async def get_credentials_by_user(self, user_id: str) -> List[Credential]: ...

    async def get_all_credentials(self) -> List[Credential]: ...

    async def get_all_users(self) -> List[User]: ...

    async def save_credential(self, credential: Credential) -> Credential: ...

    async def update_counter(self, credential_id: str, new_counter: int) -> Credential: ...

    async def delete_credential(self, credential_id: str) -> bool: ...


class MutableCredentialRepository:
    """Repository backed by the embedded SQLite database."""

    def __init__(self, database: SQLiteDatabase):
        self.db = database

    async def initialize(self) -> None:
        try:
            await self.db.initialize()
        except aiosqlite.Error as e:
            raise StorageUnavailableError(f"Failed to initialize database: {e}") from e

    @staticmethod
    def _row_to_credential(row: dict) -> Credential:
        return Credential(
            id=row["id"],
            user_id=row["user_id"],
            webauthn_user_id=row["webauthn_user_id"],
            public_key=decode_public_key(row["public_key"]),
            counter=row["counter"],
            device_type=row["device_type"],
            backed_up=row["backed_up"] == 1,
            transports=json.loads(row["transports"] or "[]"),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )

    async def _fetch_one(self, query: str, params: tuple = ()):
        try:
            return await self.db.fetch_one(query, params)
        except aiosqlite.Error as e:
            logger.error(f"Database error running {query!r}: {e}")
            raise StorageUnavailableError(str(e)) from e

    async def _fetch_all(self, query: str, params: tuple = ()):
        try:
            return await self.db.fetch_all(query, params)
        except aiosqlite.Error as e:
            logger.error(f"Database error running {query!r}: {e}")
            raise StorageUnavailableError(str(e)) from e

    async def _execute(self, query: str, params: tuple = ()) -> int:
        try:
            return await self.db.execute(query, params)
        except aiosqlite.IntegrityError:
            raise
        except aiosqlite.Error as e:
            logger.error(f"Database error running {query!r}: {e}")
            raise StorageUnavailableError(str(e)) from e

    async def get_user(self, user_id: str) -> Optional[User]:
        row = await self._fetch_one("SELECT id, username FROM users WHERE id = ?", (user_id,))
        return User(**row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self._fetch_one(
            "SELECT id, username FROM users WHERE username = ?", (username,)
        )
        return User(**row) if row else None

    async def create_user(self, user_id: str, username: str) -> User:
        try:
            await self._execute(
                "INSERT INTO users (id, username, created_at) VALUES (?, ?, ?)",
                (user_id, username, _now()),
            )
        except aiosqlite.IntegrityError as e:
            raise UserExistsError(f"User {username!r} already exists") from e
        logger.info(f"Created user {user_id}")
        return User(id=user_id, username=username)

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        row = await self._fetch_one("SELECT * FROM credentials WHERE id = ?", (credential_id,))
        return self._row_to_credential(row) if row else None

    async def get_credentials_by_user(self, user_id: str) -> List[Credential]:
        rows = await self._fetch_all(
            "SELECT * FROM credentials WHERE user_id = ? ORDER BY created_at, id", (user_id,)
        )
        return [self._row_to_credential(row) for row in rows]

    async def get_all_credentials(self) -> List[Credential]:
        rows = await self._fetch_all("SELECT * FROM credentials ORDER BY created_at, id")
        return [self._row_to_credential(row) for row in rows]

    async def get_all_users(self) -> List[User]:
        rows = await self._fetch_all("SELECT id, username FROM users ORDER BY created_at, id")
        return [User(**row) for row in rows]

    async def save_credential(self, credential: Credential) -> Credential:
        stored = credential.copy()
        stored.created_at = stored.created_at or _now()
        try:
            await self._execute(
                """
                INSERT INTO credentials (
                    id, user_id, webauthn_user_id, public_key, counter,
                    device_type, backed_up, transports, created_at, last_used_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.id,
                    stored.user_id,
                    stored.webauthn_user_id,
                    encode_public_key(stored.public_key),
                    stored.counter,
                    stored.device_type,
                    1 if stored.backed_up else 0,
                    json.dumps(stored.transports),
                    stored.created_at,
                    stored.last_used_at,
                ),
            )
        except aiosqlite.IntegrityError as e:
            if "unique" in str(e).lower():
                raise CredentialExistsError(f"Credential {stored.id} already exists") from e
            raise CredentialRepositoryError(f"Cannot save credential {stored.id}: {e}") from e
        logger.info(f"Saved credential {stored.id} for user {stored.user_id}")
        return stored

    async def update_counter(self, credential_id: str, new_counter: int) -> Credential:
        # The counter guard is part of the statement so a concurrent
        # authentication cannot slip a lower value past the check.
        updated = await self._execute(
            "UPDATE credentials SET counter = ?, last_used_at = ? WHERE id = ? AND counter <= ?",
            (new_counter, _now(), credential_id, new_counter),
        )
        if not updated:
            current = await self.get_credential(credential_id)
            if current is None:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
            raise CounterRegressionError(credential_id, current.counter, new_counter)
        return await self.get_credential(credential_id)

    async def delete_credential(self, credential_id: str) -> bool:
        deleted = await self._execute("DELETE FROM credentials WHERE id = ?", (credential_id,))
        if deleted:
            logger.info(f"Deleted credential {credential_id}")
        return bool(deleted)


class RestrictedCredentialRepository:
    """
    Repository serving the enrolled set loaded once per process.

    Counter updates always apply to the process-local copy. Other writes
    follow write_policy:

    - "reject": raise PolicyDeniedError.
    - "ignore": log and drop the write. A dropped delete of an existing
      credential raises WriteIgnoredError so callers can tell it never happened.
    - "persist": apply to the local copy and write a snapshot of the whole set
      to snapshot_path in the object store for an operator to promote. A
      failed snapshot rolls the local change back.
    """

    def __init__(
        self,
        cache: EnrolledSetCache,
        write_policy: str = "reject",
        object_store: Optional[ObjectStore] = None,
        snapshot_path: Optional[str] = None,
    ):
        if write_policy not in WRITE_POLICIES:
            raise ValueError(f"Unknown write policy: {write_policy}")
        if write_policy == "persist" and (object_store is None or not snapshot_path):
            raise ValueError("The persist policy requires an object store and snapshot path")
        self.cache = cache
        self.write_policy = write_policy
        self.object_store = object_store
        self.snapshot_path = snapshot_path
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        await self.cache.get()

    def _check_write(self, operation: str) -> bool:
        """Return True when the write should be applied."""
        if self.write_policy == "reject":
            raise PolicyDeniedError(f"{operation} is not permitted by the restricted backend")
        if self.write_policy == "ignore":
            logger.warning(f"Dropping {operation}: restricted backend ignores writes")
            return False
        return True

    async def _persist_snapshot(self, dataset) -> None:
        if self.write_policy != "persist":
            return
        await self.object_store.put(
            self.snapshot_path, serialize_dataset(dataset), overwrite=True
        )
        logger.info(f"Wrote enrolled set snapshot to {self.snapshot_path}")

    async def get_user(self, user_id: str) -> Optional[User]:
        dataset = await self.cache.get()
        user = dataset.users.get(user_id)
        return User(id=user.id, username=user.username) if user else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        dataset = await self.cache.get()
        for user in dataset.users.values():
            if user.username == username:
                return User(id=user.id, username=user.username)
        return None

    async def create_user(self, user_id: str, username: str) -> User:
        if not self._check_write("create_user"):
            return User(id=user_id, username=username)
        async with self._write_lock:
            dataset = await self.cache.get()
            if user_id in dataset.users or any(
                u.username == username for u in dataset.users.values()
            ):
                raise UserExistsError(f"User {username!r} already exists")
            dataset.users[user_id] = User(id=user_id, username=username)
            try:
                await self._persist_snapshot(dataset)
            except Exception:
                del dataset.users[user_id]
                raise
        return User(id=user_id, username=username)

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        dataset = await self.cache.get()
        credential = dataset.credentials.get(credential_id)
        return credential.copy() if credential else None

    async def get_credentials_by_user(self, user_id: str) -> List[Credential]:
        dataset = await self.cache.get()
        return [c.copy() for c in dataset.credentials.values() if c.user_id == user_id]

    async def get_all_credentials(self) -> List[Credential]:
        dataset = await self.cache.get()
        return [c.copy() for c in dataset.credentials.values()]

    async def get_all_users(self) -> List[User]:
        dataset = await self.cache.get()
        return [User(id=u.id, username=u.username) for u in dataset.users.values()]

    async def save_credential(self, credential: Credential) -> Credential:
        stored = credential.copy()
        stored.created_at = stored.created_at or _now()
        if not self._check_write("save_credential"):
            return stored
        async with self._write_lock:
            dataset = await self.cache.get()
            if stored.id in dataset.credentials:
                raise CredentialExistsError(f"Credential {stored.id} already exists")
            dataset.credentials[stored.id] = stored
            try:
                await self._persist_snapshot(dataset)
            except Exception:
                del dataset.credentials[stored.id]
                raise
        return stored.copy()

    async def update_counter(self, credential_id: str, new_counter: int) -> Credential:
        async with self._write_lock:
            dataset = await self.cache.get()
            credential = dataset.credentials.get(credential_id)
            if credential is None:
                raise CredentialNotFoundError(f"Credential {credential_id} not found")
            if new_counter < credential.counter:
                raise CounterRegressionError(credential_id, credential.counter, new_counter)
            previous = credential.copy()
            credential.counter = new_counter
            credential.last_used_at = _now()
            try:
                await self._persist_snapshot(dataset)
            except Exception:
                dataset.credentials[credential_id] = previous
                raise
            return credential.copy()

    async def delete_credential(self, credential_id: str) -> bool:
        if not self._check_write("delete_credential"):
            dataset = await self.cache.get()
            if credential_id not in dataset.credentials:
                return False
            raise WriteIgnoredError(f"Deletion of credential {credential_id} was not applied")
        async with self._write_lock:
            dataset = await self.cache.get()
            removed = dataset.credentials.pop(credential_id, None)
            if removed is None:
                return False
            try:
                await self._persist_snapshot(dataset)
            except Exception:
                dataset.credentials[credential_id] = removed
                raise
        return True


def build_credential_repository(settings, object_store: ObjectStore):
    """Select the backend for this process from configuration."""
    if settings.interactive_mode:
        logger.info(f"Using mutable credential backend at {settings.database_path}")
        return MutableCredentialRepository(SQLiteDatabase(settings.database_path))

    if settings.enrolled_dataset_source == "object_store":
        source = ObjectStoreDatasetSource(object_store, settings.enrolled_dataset_path)
    else:
        source = FileDatasetSource(settings.enrolled_dataset_path)

    logger.info(
        f"Using restricted credential backend ({settings.enrolled_dataset_source}: "
        f"{settings.enrolled_dataset_path}, write policy {settings.restricted_write_policy})"
    )
    return RestrictedCredentialRepository(
        EnrolledSetCache(source),
        write_policy=settings.restricted_write_policy,
        object_store=object_store,
        snapshot_path=settings.enrolled_snapshot_path,
    )

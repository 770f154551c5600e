"""
Tests for the mutable and restricted credential repositories.
"""

import json
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from passkey_gate.clients.object_store import MemoryObjectStore, StorageUnavailableError
from passkey_gate.clients.sqlite_client import SQLiteDatabase
from passkey_gate.config import Settings
from passkey_gate.models.internal_models import Credential
from passkey_gate.services.credential_repository import (
    CounterRegressionError,
    CredentialExistsError,
    CredentialNotFoundError,
    CredentialRepositoryError,
    MutableCredentialRepository,
    PolicyDeniedError,
    RestrictedCredentialRepository,
    UserExistsError,
    WriteIgnoredError,
    build_credential_repository,
)
from passkey_gate.services.enrolled_dataset import (
    EnrolledSetCache,
    FileDatasetSource,
    parse_dataset,
)


def make_credential(credential_id="c1", user_id="u1", counter=0, transports=None):
    return Credential(
        id=credential_id,
        user_id=user_id,
        webauthn_user_id=user_id,
        public_key=b"\x01\x02\x03",
        counter=counter,
        transports=transports if transports is not None else ["internal"],
    )


ENROLLED = {
    "version": 1,
    "users": [{"id": "u1", "username": "alice"}],
    "credentials": [{
        "id": "c1",
        "userId": "u1",
        "webAuthnUserId": "u1",
        "publicKey": "AQID",
        "counter": 5,
        "deviceType": "singleDevice",
        "backedUp": False,
        "transports": ["internal"],
        "createdAt": 1700000000,
    }],
}


class TestMutableCredentialRepository:
    """Test cases for the SQLite backed repository."""

    @pytest.fixture
    async def repository(self, tmp_path):
        """Initialized repository over a fresh database file."""
        repo = MutableCredentialRepository(SQLiteDatabase(str(tmp_path / "db" / "app.db")))
        await repo.initialize()
        await repo.create_user("u1", "alice")
        return repo

    @pytest.mark.asyncio
    async def test_create_and_get_user(self, repository):
        assert (await repository.get_user("u1")).username == "alice"
        assert (await repository.get_user_by_username("alice")).id == "u1"
        assert await repository.get_user("missing") is None
        assert [u.id for u in await repository.get_all_users()] == ["u1"]

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, repository):
        with pytest.raises(UserExistsError):
            await repository.create_user("u2", "alice")

    @pytest.mark.asyncio
    async def test_credential_round_trip(self, repository):
        """Zero counter and empty transports survive storage unchanged."""
        await repository.save_credential(make_credential(counter=0, transports=[]))

        stored = await repository.get_credential("c1")

        assert stored.counter == 0
        assert stored.transports == []
        assert stored.public_key == b"\x01\x02\x03"
        assert stored.backed_up is False
        assert stored.created_at > 0
        assert stored.last_used_at is None

    @pytest.mark.asyncio
    async def test_duplicate_credential_rejected(self, repository):
        await repository.save_credential(make_credential())

        with pytest.raises(CredentialExistsError):
            await repository.save_credential(make_credential())

    @pytest.mark.asyncio
    async def test_credential_for_unknown_user_rejected(self, repository):
        with pytest.raises(CredentialRepositoryError) as exc_info:
            await repository.save_credential(make_credential(user_id="ghost"))

        assert not isinstance(exc_info.value, CredentialExistsError)

    @pytest.mark.asyncio
    async def test_credentials_by_user(self, repository):
        await repository.create_user("u2", "bob")
        await repository.save_credential(make_credential("c1", "u1"))
        await repository.save_credential(make_credential("c2", "u1"))
        await repository.save_credential(make_credential("c3", "u2"))

        assert {c.id for c in await repository.get_credentials_by_user("u1")} == {"c1", "c2"}
        assert len(await repository.get_all_credentials()) == 3

    @pytest.mark.asyncio
    async def test_update_counter(self, repository):
        await repository.save_credential(make_credential(counter=5))

        updated = await repository.update_counter("c1", 6)

        assert updated.counter == 6
        assert updated.last_used_at is not None

    @pytest.mark.asyncio
    async def test_update_counter_allows_equal_value(self, repository):
        await repository.save_credential(make_credential(counter=0))

        assert (await repository.update_counter("c1", 0)).counter == 0

    @pytest.mark.asyncio
    async def test_update_counter_regression(self, repository):
        await repository.save_credential(make_credential(counter=5))

        with pytest.raises(CounterRegressionError) as exc_info:
            await repository.update_counter("c1", 4)

        assert exc_info.value.stored == 5
        assert exc_info.value.received == 4
        assert (await repository.get_credential("c1")).counter == 5

    @pytest.mark.asyncio
    async def test_update_counter_unknown_credential(self, repository):
        with pytest.raises(CredentialNotFoundError):
            await repository.update_counter("missing", 1)

    @pytest.mark.asyncio
    async def test_delete_credential(self, repository):
        await repository.save_credential(make_credential())

        assert await repository.delete_credential("c1") is True
        assert await repository.get_credential("c1") is None
        assert await repository.delete_credential("c1") is False

    @pytest.mark.asyncio
    async def test_database_errors_become_storage_errors(self, repository):
        repository.db.fetch_one = AsyncMock(side_effect=aiosqlite.OperationalError("locked"))

        with pytest.raises(StorageUnavailableError):
            await repository.get_user("u1")


class TestRestrictedCredentialRepository:
    """Test cases for the enrolled-set backed repository."""

    @pytest.fixture
    def dataset_path(self, tmp_path):
        path = tmp_path / "enrolled-v1.json"
        path.write_text(json.dumps(ENROLLED))
        return str(path)

    def make_repository(self, dataset_path, policy="reject", store=None):
        return RestrictedCredentialRepository(
            EnrolledSetCache(FileDatasetSource(dataset_path)),
            write_policy=policy,
            object_store=store,
            snapshot_path="passkey-store/enrolled-pending.json",
        )

    @pytest.mark.asyncio
    async def test_reads_enrolled_set(self, dataset_path):
        repository = self.make_repository(dataset_path)

        assert (await repository.get_user_by_username("alice")).id == "u1"
        assert (await repository.get_credential("c1")).counter == 5
        assert [c.id for c in await repository.get_credentials_by_user("u1")] == ["c1"]
        assert await repository.get_credential("missing") is None

    @pytest.mark.asyncio
    async def test_returned_credentials_are_copies(self, dataset_path):
        repository = self.make_repository(dataset_path)

        credential = await repository.get_credential("c1")
        credential.counter = 99

        assert (await repository.get_credential("c1")).counter == 5

    @pytest.mark.asyncio
    async def test_reject_policy(self, dataset_path):
        repository = self.make_repository(dataset_path, "reject")

        with pytest.raises(PolicyDeniedError):
            await repository.create_user("u2", "bob")
        with pytest.raises(PolicyDeniedError):
            await repository.save_credential(make_credential("c2"))
        with pytest.raises(PolicyDeniedError):
            await repository.delete_credential("c1")

    @pytest.mark.asyncio
    async def test_ignore_policy_drops_writes(self, dataset_path):
        repository = self.make_repository(dataset_path, "ignore")

        await repository.create_user("u2", "bob")
        await repository.save_credential(make_credential("c2"))
        with pytest.raises(WriteIgnoredError):
            await repository.delete_credential("c1")
        assert await repository.delete_credential("missing") is False

        assert await repository.get_user("u2") is None
        assert await repository.get_credential("c2") is None
        assert await repository.get_credential("c1") is not None

    @pytest.mark.asyncio
    async def test_persist_policy_writes_snapshot(self, dataset_path):
        store = MemoryObjectStore()
        repository = self.make_repository(dataset_path, "persist", store)

        await repository.create_user("u2", "bob")
        await repository.save_credential(make_credential("c2", "u2"))

        snapshot = parse_dataset(await store.get("passkey-store/enrolled-pending.json"))
        assert set(snapshot.users) == {"u1", "u2"}
        assert set(snapshot.credentials) == {"c1", "c2"}
        assert (await repository.get_credential("c2")).user_id == "u2"

    @pytest.mark.asyncio
    async def test_persist_policy_rejects_duplicate_credential(self, dataset_path):
        store = MemoryObjectStore()
        repository = self.make_repository(dataset_path, "persist", store)

        with pytest.raises(CredentialExistsError):
            await repository.save_credential(make_credential("c1"))

        assert (await repository.get_credential("c1")).counter == 5

    @pytest.mark.asyncio
    async def test_persist_policy_rolls_back_on_failure(self, dataset_path):
        store = AsyncMock()
        store.put.side_effect = StorageUnavailableError("down")
        repository = self.make_repository(dataset_path, "persist", store)

        with pytest.raises(StorageUnavailableError):
            await repository.save_credential(make_credential("c2"))
        with pytest.raises(StorageUnavailableError):
            await repository.delete_credential("c1")

        assert await repository.get_credential("c2") is None
        assert await repository.get_credential("c1") is not None

    def test_persist_policy_requires_store(self, dataset_path):
        with pytest.raises(ValueError):
            RestrictedCredentialRepository(
                EnrolledSetCache(FileDatasetSource(dataset_path)), write_policy="persist"
            )

    @pytest.mark.asyncio
    async def test_update_counter_applies_under_reject_policy(self, dataset_path):
        repository = self.make_repository(dataset_path, "reject")

        updated = await repository.update_counter("c1", 6)

        assert updated.counter == 6
        assert (await repository.get_credential("c1")).counter == 6

    @pytest.mark.asyncio
    async def test_update_counter_regression(self, dataset_path):
        repository = self.make_repository(dataset_path)

        with pytest.raises(CounterRegressionError):
            await repository.update_counter("c1", 4)
        assert (await repository.get_credential("c1")).counter == 5

    @pytest.mark.asyncio
    async def test_missing_dataset_means_no_credentials(self, tmp_path):
        repository = self.make_repository(str(tmp_path / "absent.json"))

        assert await repository.get_all_credentials() == []
        assert await repository.get_all_users() == []


class TestBuildCredentialRepository:
    """Backend selection from settings."""

    def test_interactive_mode_selects_mutable(self, tmp_path):
        settings = Settings(interactive_mode=True, database_path=str(tmp_path / "app.db"))

        repository = build_credential_repository(settings, MemoryObjectStore())

        assert isinstance(repository, MutableCredentialRepository)

    def test_non_interactive_selects_restricted(self):
        settings = Settings(
            interactive_mode=False,
            session_secret="production-secret",
            enrolled_dataset_source="object_store",
            restricted_write_policy="ignore",
        )

        repository = build_credential_repository(settings, MemoryObjectStore())

        assert isinstance(repository, RestrictedCredentialRepository)
        assert repository.write_policy == "ignore"

"""
Tests for VaultStore.

Tests cover:
- Entry creation and custody window
- Unlock with attempt-limited lockout
- Lazy expiry on access
- Expiry status and statistics
- Deletion and read-only views
- Persistence through JsonFileBackend
"""
import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError

from civic_vault.exceptions import (
    EntryExpired,
    EntryLocked,
    EntryNotFound,
    UnlockVerificationFailed,
)
from civic_vault.models import CustodyMetadata, EntryStatus, UnlockMethod
from civic_vault.telemetry import VaultOperation
from civic_vault.vault import JsonFileBackend, VaultStore

PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def credential(minter):
    return minter.mint("did:civic:verifier-alice")


async def _stored(store, credential, **secrets):
    secrets.setdefault("passphrase_secret", PASSPHRASE)
    return await store.store(credential, **secrets)


class TestStore:
    """Tests for VaultStore.store."""

    @pytest.mark.asyncio
    async def test_store_creates_active_entry(self, store, credential, clock):
        entry_id = await _stored(store, credential)
        entry = store.get_entry(entry_id)
        assert entry.status is EntryStatus.ACTIVE
        assert entry.credential_id == credential.id
        assert entry.subject_did == "did:civic:verifier-alice"
        assert entry.custody.stored_at == clock()
        assert entry.custody.expires_at == clock() + timedelta(days=365)
        assert entry.custody.refresh_history == []

    @pytest.mark.asyncio
    async def test_secrets_are_hashed(self, store, credential):
        entry_id = await _stored(store, credential, biometric_secret="template-123")
        custody = store.get_entry(entry_id).custody
        assert custody.passphrase_secret_hash.startswith("scrypt$passphrase$")
        assert custody.biometric_secret_hash.startswith("scrypt$biometric$")
        assert PASSPHRASE not in custody.passphrase_secret_hash

    @pytest.mark.asyncio
    async def test_entry_id_embeds_credential(self, store, credential):
        entry_id = await _stored(store, credential)
        assert entry_id.startswith("vault-cid-m-verifier-alice-")

    @pytest.mark.asyncio
    async def test_empty_secret_rejected(self, store, credential, telemetry):
        with pytest.raises(ValueError):
            await store.store(credential, passphrase_secret="")
        assert len(store) == 0
        [event] = telemetry.by_operation(VaultOperation.ERROR_OCCURRED)
        assert event.details["original_operation"] == "entry_created"

    @pytest.mark.asyncio
    async def test_emits_entry_created(self, store, credential, telemetry):
        entry_id = await _stored(store, credential)
        [event] = telemetry.by_operation(VaultOperation.ENTRY_CREATED)
        assert event.entry_id == entry_id
        assert event.details["has_passphrase"] is True
        assert event.details["has_biometric"] is False

    def test_custody_window_invariant(self, clock):
        with pytest.raises(ValidationError):
            CustodyMetadata(
                stored_at=clock(),
                expires_at=clock() - timedelta(seconds=1),
                last_accessed_at=clock(),
            )


class TestUnlock:
    """Tests for VaultStore.unlock."""

    @pytest.mark.asyncio
    async def test_unlock_success(self, store, credential):
        entry_id = await _stored(store, credential)
        result = await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)
        assert result.success
        assert result.access_count == 1
        assert result.entry.credential == credential
        assert result.remaining_attempts == 3

    @pytest.mark.asyncio
    async def test_lockout_after_three_failures(self, store, credential, telemetry):
        entry_id = await _stored(store, credential)
        remaining = []
        for _ in range(3):
            with pytest.raises(UnlockVerificationFailed) as exc:
                await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")
            remaining.append(exc.value.remaining_attempts)
        assert remaining == [2, 1, 0]
        assert exc.value.retryable is False
        assert store.get_entry(entry_id).status is EntryStatus.LOCKED
        assert len(telemetry.by_operation(VaultOperation.ENTRY_LOCKED)) == 1

        # the correct secret no longer helps
        with pytest.raises(EntryLocked):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)

    @pytest.mark.asyncio
    async def test_success_resets_attempts(self, store, credential):
        entry_id = await _stored(store, credential)
        for _ in range(2):
            with pytest.raises(UnlockVerificationFailed):
                await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")
        await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)
        for _ in range(2):
            with pytest.raises(UnlockVerificationFailed) as exc:
                await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")
        assert exc.value.remaining_attempts == 1
        assert store.get_entry(entry_id).status is EntryStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_missing_method_counts_as_failure(self, store, credential):
        entry_id = await _stored(store, credential)
        with pytest.raises(UnlockVerificationFailed) as exc:
            await store.unlock(entry_id, UnlockMethod.BIOMETRIC, PASSPHRASE)
        assert exc.value.remaining_attempts == 2

    @pytest.mark.asyncio
    async def test_secret_bound_to_method(self, store, credential):
        entry_id = await _stored(store, credential, biometric_secret="template-123")
        await store.unlock(entry_id, UnlockMethod.BIOMETRIC, "template-123")
        with pytest.raises(UnlockVerificationFailed):
            await store.unlock(entry_id, UnlockMethod.BIOMETRIC, PASSPHRASE)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, store):
        with pytest.raises(EntryNotFound):
            await store.unlock("vault-missing", UnlockMethod.PASSPHRASE, PASSPHRASE)

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(self, store, credential):
        entry_id = await _stored(store, credential)
        results = await asyncio.gather(
            store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong-1"),
            store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong-2"),
            return_exceptions=True,
        )
        assert all(isinstance(r, UnlockVerificationFailed) for r in results)
        assert sorted(r.remaining_attempts for r in results) == [1, 2]
        assert store.get_entry(entry_id).custody.failed_attempts == 2

    @pytest.mark.asyncio
    async def test_lazy_expiry(self, store, credential, clock):
        entry_id = await _stored(store, credential)
        clock.advance(days=366)
        with pytest.raises(EntryExpired):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)
        assert store.get_entry(entry_id).status is EntryStatus.EXPIRED
        with pytest.raises(EntryExpired):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)

    @pytest.mark.asyncio
    async def test_unlock_failures_reach_telemetry(self, store, credential, telemetry):
        entry_id = await _stored(store, credential)
        with pytest.raises(UnlockVerificationFailed):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")
        [event] = telemetry.by_operation(VaultOperation.ERROR_OCCURRED)
        assert event.entry_id == entry_id
        assert event.details["error_type"] == "UnlockVerificationFailed"
        assert "wrong" not in str(event.details)

    @pytest.mark.asyncio
    async def test_entry_deleted_while_waiting(self, store, credential, telemetry):
        entry_id = await _stored(store, credential)
        async with store.transaction(entry_id):
            deleter = asyncio.create_task(store.delete(entry_id))
            await asyncio.sleep(0)
            unlocker = asyncio.create_task(
                store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)
            )
            await asyncio.sleep(0)
        assert await deleter is True
        with pytest.raises(EntryNotFound):
            await unlocker
        [event] = telemetry.by_operation(VaultOperation.ERROR_OCCURRED)
        assert event.details["original_operation"] == "entry_unlocked"
        assert event.details["error_type"] == "EntryNotFound"


class TestExpiryStatus:
    """Tests for check_expiry_status."""

    @pytest.mark.asyncio
    async def test_fresh_entry(self, store, credential):
        entry_id = await _stored(store, credential)
        status = store.check_expiry_status(entry_id)
        assert not status.is_expired
        assert status.days_until_expiry == 365
        assert not status.should_refresh

    @pytest.mark.asyncio
    @pytest.mark.parametrize("days, should_refresh", [(334, False), (335, True), (364, True)])
    async def test_refresh_window(self, store, credential, clock, days, should_refresh):
        entry_id = await _stored(store, credential)
        clock.advance(days=days)
        status = store.check_expiry_status(entry_id)
        assert status.days_until_expiry == 365 - days
        assert status.should_refresh is should_refresh

    @pytest.mark.asyncio
    async def test_past_expiry(self, store, credential, clock):
        entry_id = await _stored(store, credential)
        clock.advance(days=400)
        status = store.check_expiry_status(entry_id)
        assert status.is_expired
        assert status.days_until_expiry == 0
        assert status.should_refresh

    def test_unknown_entry(self, store):
        with pytest.raises(EntryNotFound):
            store.check_expiry_status("vault-missing")


class TestStatistics:
    """Tests for get_statistics."""

    def test_empty_vault(self, store):
        stats = store.get_statistics()
        assert stats.total_entries == 0
        assert stats.average_access_count == 0.0

    @pytest.mark.asyncio
    async def test_counts(self, store, minter, clock):
        first = await _stored(store, minter.mint("did:civic:citizen-bob"))
        second = await _stored(store, minter.mint("did:civic:verifier-alice"))
        await store.unlock(first, UnlockMethod.PASSPHRASE, PASSPHRASE)
        await store.unlock(first, UnlockMethod.PASSPHRASE, PASSPHRASE)
        for _ in range(3):
            with pytest.raises(UnlockVerificationFailed):
                await store.unlock(second, UnlockMethod.PASSPHRASE, "wrong")
        clock.advance(days=340)
        stats = store.get_statistics()
        assert stats.total_entries == 2
        assert stats.active_entries == 1
        assert stats.locked_entries == 1
        assert stats.average_access_count == 1.0
        assert stats.upcoming_expirations == 1


class TestDeleteAndViews:
    """Tests for delete and read-only views."""

    @pytest.mark.asyncio
    async def test_delete(self, store, credential):
        entry_id = await _stored(store, credential)
        assert await store.delete(entry_id) is True
        assert entry_id not in store
        assert await store.delete(entry_id) is False
        with pytest.raises(EntryNotFound):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)

    @pytest.mark.asyncio
    async def test_views_are_copies(self, store, credential):
        entry_id = await _stored(store, credential)
        snapshot = store.get_entry(entry_id)
        snapshot.status = EntryStatus.LOCKED
        snapshot.custody.access_count = 99
        entry = store.get_entry(entry_id)
        assert entry.status is EntryStatus.ACTIVE
        assert entry.custody.access_count == 0

    @pytest.mark.asyncio
    async def test_entries_for_subject(self, store, minter):
        await _stored(store, minter.mint("did:civic:citizen-bob"))
        await _stored(store, minter.mint("did:civic:citizen-bob"))
        await _stored(store, minter.mint("did:civic:verifier-alice"))
        assert len(store.entries_for_subject("did:civic:citizen-bob")) == 2
        assert len(store.list_entries()) == 3


class TestPersistence:
    """Tests for JsonFileBackend."""

    @pytest.mark.asyncio
    async def test_round_trip(self, config, telemetry, clock, credential, tmp_path):
        path = tmp_path / "vault.json"
        store = VaultStore(config, telemetry, JsonFileBackend(path), clock)
        entry_id = await _stored(store, credential)
        with pytest.raises(UnlockVerificationFailed):
            await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")

        restored = await VaultStore.load(config, telemetry, JsonFileBackend(path), clock)
        entry = restored.get_entry(entry_id)
        assert entry.credential == credential
        assert entry.custody.failed_attempts == 1
        result = await restored.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)
        assert result.access_count == 1

    @pytest.mark.asyncio
    async def test_store_path_selects_file_backend(self, make_config, telemetry, clock, credential, tmp_path):
        config = make_config(store_path=str(tmp_path / "snap" / "vault.json"))
        store = VaultStore(config=config, telemetry=telemetry, clock=clock)
        await _stored(store, credential)
        assert (tmp_path / "snap" / "vault.json").exists()

    @pytest.mark.asyncio
    async def test_unsupported_snapshot_version(self, tmp_path):
        path = tmp_path / "vault.json"
        path.write_bytes(b'{"version": 99, "entries": []}')
        with pytest.raises(ValueError):
            await JsonFileBackend(path).load()

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, tmp_path):
        assert await JsonFileBackend(tmp_path / "absent.json").load() == {}

    @pytest.mark.asyncio
    async def test_lockout_is_persisted(self, config, make_config, telemetry, clock, credential, tmp_path):
        path = tmp_path / "vault.json"
        store = VaultStore(config, telemetry, JsonFileBackend(path), clock)
        entry_id = await _stored(store, credential)
        for _ in range(2):
            with pytest.raises(UnlockVerificationFailed):
                await store.unlock(entry_id, UnlockMethod.PASSPHRASE, "wrong")

        # a stricter limit applies to the restored entry
        strict = make_config(max_unlock_attempts=2)
        restored = await VaultStore.load(strict, telemetry, JsonFileBackend(path), clock)
        with pytest.raises(EntryLocked):
            await restored.unlock(entry_id, UnlockMethod.PASSPHRASE, PASSPHRASE)

        reloaded = await VaultStore.load(strict, telemetry, JsonFileBackend(path), clock)
        assert reloaded.get_entry(entry_id).status is EntryStatus.LOCKED

    @pytest.mark.asyncio
    async def test_concurrent_saves_off_event_loop(
        self, config, telemetry, clock, minter, tmp_path, monkeypatch,
    ):
        path = tmp_path / "vault.json"
        threaded = []
        to_thread = asyncio.to_thread

        async def spy(func, *args, **kwargs):
            threaded.append(getattr(func, "__name__", repr(func)))
            return await to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", spy)
        store = VaultStore(config, telemetry, JsonFileBackend(path), clock)
        credentials = [minter.mint(f"did:civic:member-{i}") for i in range(5)]
        entry_ids = await asyncio.gather(*(_stored(store, c) for c in credentials))

        assert threaded.count("_write") == 5
        assert not (tmp_path / ".vault.json.tmp").exists()
        restored = await VaultStore.load(config, telemetry, JsonFileBackend(path), clock)
        assert sorted(e.entry_id for e in restored.list_entries()) == sorted(entry_ids)

"""
VaultStore — custody of minted credentials behind attempt-limited unlock.

Provides the public API for the Identity Vault:
- ``store(credential, bundle, biometric_secret, passphrase_secret)`` — create an entry
- ``unlock(entry_id, method, secret)`` — verify a secret and return the entry
- ``check_expiry_status(entry_id)`` / ``get_statistics()`` — read-only views
- ``delete(entry_id)`` — remove an entry
- ``transaction(entry_id)`` — exclusive access used by refresh
- ``load()`` — factory that restores entries from a backend

Every mutation of an entry runs under that entry's ``asyncio.Lock``; reads
return deep copies, so callers never hold a live reference into the store.

Security Note:
    Never log secrets or secret hashes. Only log entry ids, credential ids,
    methods and counters.
"""
import math
import time
import uuid
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Optional

from ..exceptions import (
    EntryExpired,
    EntryLocked,
    EntryNotFound,
    UnlockVerificationFailed,
    VaultError,
)
from ..models import (
    Clock,
    CredentialToken,
    CustodyMetadata,
    EntryStatus,
    ExpiryStatus,
    RefreshRecord,
    UnlockMethod,
    UnlockResult,
    VaultEntry,
    VaultStatistics,
    utcnow,
)
from ..telemetry import VaultOperation, VaultTelemetry
from .backends import JsonFileBackend, MemoryBackend, VaultBackend
from .config import VaultConfig
from .crypto import hash_secret, verify_secret

logger = logging.getLogger("civic_vault.vault")


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class EntryTransaction:
    """Exclusive handle on one entry, valid inside ``VaultStore.transaction``."""

    def __init__(self, store: "VaultStore", entry_id: str):
        self._store = store
        self.entry_id = entry_id
        self.committed = False

    @property
    def _live(self) -> VaultEntry:
        return self._store._entries[self.entry_id]

    @property
    def entry(self) -> VaultEntry:
        """Snapshot of the entry as it is right now."""
        return self._live.model_copy(deep=True)

    def begin_refresh(self) -> None:
        """Move the entry to ``refreshing``.

        Raises:
            EntryLocked: If the entry is locked or not active.
        """
        entry = self._live
        if (
            entry.status is EntryStatus.LOCKED
            or entry.custody.failed_attempts >= self._store.config.max_unlock_attempts
        ):
            raise EntryLocked(self.entry_id)
        if entry.status is not EntryStatus.ACTIVE:
            raise EntryLocked(self.entry_id, reason=f"entry is {entry.status.value}")
        entry.status = EntryStatus.REFRESHING

    async def commit_refresh(
        self,
        credential: CredentialToken,
        bundle: Optional[dict[str, Any]],
        record: RefreshRecord,
    ) -> VaultEntry:
        """Swap in the refreshed credential, bundle and history row.

        The new entry is built aside and replaces the old one in a single
        assignment; if persisting fails the old entry is put back.

        Returns:
            Snapshot of the committed entry.
        """
        previous = self._live
        if previous.status is not EntryStatus.REFRESHING:
            raise RuntimeError(f"Entry {self.entry_id} is not being refreshed")
        history = previous.custody.refresh_history
        if history and record.refreshed_at < history[-1].refreshed_at:
            raise ValueError("Refresh history must stay time-ordered")
        now = self._store.clock()
        updated = previous.model_copy(deep=True)
        updated.credential = credential
        updated.credential_id = credential.id
        updated.reputation_bundle = bundle
        updated.custody.refresh_history.append(record)
        updated.custody.expires_at = now + timedelta(days=self._store.config.entry_lifetime_days)
        updated.custody.last_accessed_at = now
        updated.status = EntryStatus.ACTIVE
        self._store._entries[self.entry_id] = updated
        try:
            await self._store._persist()
        except Exception:
            self._store._entries[self.entry_id] = previous
            previous.status = EntryStatus.ACTIVE
            raise
        self.committed = True
        return updated.model_copy(deep=True)

    def rollback(self) -> None:
        entry = self._store._entries.get(self.entry_id)
        if entry is not None and entry.status is EntryStatus.REFRESHING:
            entry.status = EntryStatus.ACTIVE
            logger.info("Refresh rolled back: entry=%s", self.entry_id)


class VaultStore:
    """In-process identity vault with per-entry mutual exclusion.

    Entries are persisted through a ``VaultBackend`` after every mutation;
    without one, ``config.store_path`` selects a ``JsonFileBackend`` and
    otherwise a ``MemoryBackend`` keeps custody for the process lifetime only.
    """

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        telemetry: Optional[VaultTelemetry] = None,
        backend: Optional[VaultBackend] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or VaultConfig()
        self.telemetry = telemetry or VaultTelemetry(clock=clock)
        self.clock = clock
        if backend is None:
            backend = (
                JsonFileBackend(self.config.store_path)
                if self.config.store_path else MemoryBackend()
            )
        self._backend = backend
        self._entries: dict[str, VaultEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, entry_id: str) -> asyncio.Lock:
        if entry_id not in self._entries:
            raise EntryNotFound(entry_id)
        return self._locks.setdefault(entry_id, asyncio.Lock())

    def _require(self, entry_id: str) -> VaultEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def _persist(self) -> None:
        await self._backend.save(self._entries)

    async def _expire_lazily(self, entry: VaultEntry) -> None:
        """Flip an overdue active entry to expired and raise ``EntryExpired``."""
        if entry.status is EntryStatus.EXPIRED:
            raise EntryExpired(entry.entry_id)
        if entry.status is EntryStatus.ACTIVE and self.clock() > entry.custody.expires_at:
            entry.status = EntryStatus.EXPIRED
            await self._persist()
            logger.info("Vault entry expired on access: entry=%s", entry.entry_id)
            raise EntryExpired(entry.entry_id)

    def _fail(
        self,
        operation: VaultOperation,
        err: VaultError,
        started: float,
        entry: Optional[VaultEntry] = None,
    ) -> VaultError:
        self.telemetry.error(
            operation,
            err,
            duration_ms=_elapsed_ms(started),
            credential_id=entry.credential_id if entry else None,
            entry_id=err.entry_id,
            subject=entry.subject_did if entry else None,
        )
        return err

    def _remaining(self, entry: VaultEntry) -> int:
        return max(0, self.config.max_unlock_attempts - entry.custody.failed_attempts)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store(
        self,
        credential: CredentialToken,
        reputation_bundle: Optional[dict[str, Any]] = None,
        biometric_secret: Optional[str] = None,
        passphrase_secret: Optional[str] = None,
    ) -> str:
        """Create a vault entry for a credential.

        Args:
            credential: Minted credential token.
            reputation_bundle: Opaque bundle from the assembler, or None.
            biometric_secret: Raw biometric template enabling biometric unlock.
            passphrase_secret: Raw passphrase enabling passphrase unlock.

        Returns:
            The new entry id.

        Raises:
            ValueError: If the credential has no id or tier.
        """
        started = time.perf_counter()
        if biometric_secret is None and passphrase_secret is None:
            logger.warning(
                "Vault entry for %s stored without unlock secrets", credential.id,
            )
        cost = {"n": self.config.scrypt_n, "r": self.config.scrypt_r, "p": self.config.scrypt_p}
        biometric_hash = passphrase_hash = None
        try:
            if not credential.id or not credential.tier:
                raise ValueError("Credential token must carry an id and a tier")
            if biometric_secret is not None:
                biometric_hash = await asyncio.to_thread(
                    hash_secret, biometric_secret, UnlockMethod.BIOMETRIC.value, **cost,
                )
            if passphrase_secret is not None:
                passphrase_hash = await asyncio.to_thread(
                    hash_secret, passphrase_secret, UnlockMethod.PASSPHRASE.value, **cost,
                )
        except ValueError as err:
            self.telemetry.error(
                VaultOperation.ENTRY_CREATED,
                err,
                duration_ms=_elapsed_ms(started),
                credential_id=credential.id,
                subject=credential.subject,
            )
            raise

        now = self.clock()
        entry_id = f"vault-{credential.id.replace(':', '-')}-{uuid.uuid4().hex[:12]}"
        entry = VaultEntry(
            entry_id=entry_id,
            credential_id=credential.id,
            subject_did=credential.subject,
            credential=credential,
            reputation_bundle=reputation_bundle,
            custody=CustodyMetadata(
                stored_at=now,
                expires_at=now + timedelta(days=self.config.entry_lifetime_days),
                last_accessed_at=now,
                biometric_secret_hash=biometric_hash,
                passphrase_secret_hash=passphrase_hash,
            ),
            status=EntryStatus.ACTIVE,
        )
        self._entries[entry_id] = entry
        try:
            await self._persist()
        except Exception:
            del self._entries[entry_id]
            raise

        self.telemetry.emit(
            VaultOperation.ENTRY_CREATED,
            duration_ms=_elapsed_ms(started),
            credential_id=credential.id,
            entry_id=entry_id,
            subject=credential.subject,
            expiration_days=self.config.entry_lifetime_days,
            has_biometric=biometric_hash is not None,
            has_passphrase=passphrase_hash is not None,
        )
        logger.info(
            "Vault entry created: cid=%s entry=%s expires=%s",
            credential.id, entry_id, entry.custody.expires_at.date().isoformat(),
        )
        return entry_id

    async def unlock(
        self, entry_id: str, method: UnlockMethod, secret: str,
    ) -> UnlockResult:
        """Verify ``secret`` for ``method`` and return the entry.

        Raises:
            EntryNotFound: No such entry.
            EntryExpired: Entry is (or just became) expired.
            EntryLocked: Attempts already exhausted or entry not active.
            UnlockVerificationFailed: Secret mismatch; carries remaining attempts.
        """
        started = time.perf_counter()
        method = UnlockMethod(method)
        try:
            lock = self._lock_for(entry_id)
        except EntryNotFound as err:
            raise self._fail(VaultOperation.ENTRY_UNLOCKED, err, started) from None
        async with lock:
            entry = None
            try:
                # the entry may have been deleted while this call waited
                entry = self._require(entry_id)
                await self._expire_lazily(entry)
                if (
                    entry.status is EntryStatus.LOCKED
                    or entry.custody.failed_attempts >= self.config.max_unlock_attempts
                ):
                    if entry.status is not EntryStatus.LOCKED:
                        entry.status = EntryStatus.LOCKED
                        await self._persist()
                    raise EntryLocked(entry_id)
                if entry.status is not EntryStatus.ACTIVE:
                    raise EntryLocked(entry_id, reason=f"entry is {entry.status.value}")
            except VaultError as err:
                raise self._fail(VaultOperation.ENTRY_UNLOCKED, err, started, entry) from None

            stored_hash = entry.secret_hash_for(method)
            matched = False
            if stored_hash is not None:
                matched = await asyncio.to_thread(verify_secret, secret, stored_hash)

            if not matched:
                entry.custody.failed_attempts += 1
                remaining = self._remaining(entry)
                if remaining == 0:
                    entry.status = EntryStatus.LOCKED
                await self._persist()
                if remaining == 0:
                    self.telemetry.emit(
                        VaultOperation.ENTRY_LOCKED,
                        success=False,
                        duration_ms=_elapsed_ms(started),
                        credential_id=entry.credential_id,
                        entry_id=entry_id,
                        lock_reason="maximum unlock attempts exceeded",
                        attempts_remaining=0,
                    )
                    logger.warning("Vault entry locked: entry=%s", entry_id)
                err = UnlockVerificationFailed(entry_id, remaining)
                raise self._fail(VaultOperation.ENTRY_UNLOCKED, err, started, entry)

            now = self.clock()
            entry.custody.failed_attempts = 0
            entry.custody.access_count += 1
            entry.custody.last_accessed_at = now
            await self._persist()
            snapshot = entry.model_copy(deep=True)

        self.telemetry.emit(
            VaultOperation.ENTRY_UNLOCKED,
            duration_ms=_elapsed_ms(started),
            credential_id=snapshot.credential_id,
            entry_id=entry_id,
            unlock_method=method.value,
            access_count=snapshot.custody.access_count,
        )
        logger.info(
            "Vault entry unlocked: cid=%s method=%s access_count=%d",
            snapshot.credential_id, method.value, snapshot.custody.access_count,
        )
        return UnlockResult(
            entry=snapshot,
            method=method,
            unlocked_at=now,
            access_count=snapshot.custody.access_count,
            remaining_attempts=self.config.max_unlock_attempts,
        )

    @asynccontextmanager
    async def transaction(self, entry_id: str) -> AsyncIterator[EntryTransaction]:
        """Hold the entry's mutation lock for the duration of the block.

        Expiry is re-checked on entry; a ``refreshing`` status left behind by
        an uncommitted block is restored to ``active`` on exit.

        Raises:
            EntryNotFound: No such entry.
            EntryExpired: Entry is (or just became) expired.
        """
        async with self._lock_for(entry_id):
            entry = self._require(entry_id)
            await self._expire_lazily(entry)
            txn = EntryTransaction(self, entry_id)
            try:
                yield txn
            finally:
                txn.rollback()

    async def expire_if_due(self, entry_id: str) -> bool:
        """Flip an overdue ``active`` entry to ``expired``.

        Returns:
            True if the entry changed state.
        """
        async with self._lock_for(entry_id):
            entry = self._entries.get(entry_id)
            if entry is None or entry.status is not EntryStatus.ACTIVE:
                return False
            if self.clock() <= entry.custody.expires_at:
                return False
            entry.status = EntryStatus.EXPIRED
            await self._persist()
            return True

    def get_entry(self, entry_id: str) -> VaultEntry:
        """Return a snapshot of one entry.

        Raises:
            EntryNotFound: No such entry.
        """
        entry = self._require(entry_id).model_copy(deep=True)
        self.telemetry.emit(
            VaultOperation.VAULT_ACCESS,
            credential_id=entry.credential_id,
            entry_id=entry_id,
            access_operation="get_entry",
            entry_count=1,
        )
        return entry

    def list_entries(self) -> list[VaultEntry]:
        entries = [e.model_copy(deep=True) for e in self._entries.values()]
        self.telemetry.emit(
            VaultOperation.VAULT_ACCESS,
            access_operation="list_entries",
            entry_count=len(entries),
        )
        return entries

    def entries_for_subject(self, subject_did: str) -> list[VaultEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._entries.values() if e.subject_did == subject_did
        ]

    def entry_ids(self) -> list[str]:
        return list(self._entries.keys())

    def is_busy(self, entry_id: str) -> bool:
        """True while another operation holds the entry's mutation lock."""
        lock = self._locks.get(entry_id)
        return lock is not None and lock.locked()

    def check_expiry_status(self, entry_id: str) -> ExpiryStatus:
        """Report how close an entry is to expiry.

        ``should_refresh`` turns on once ``days_until_expiry`` falls within
        the refresh window; hard expiry is reported by ``is_expired``.

        Raises:
            EntryNotFound: No such entry.
        """
        entry = self._require(entry_id)
        now = self.clock()
        remaining = (entry.custody.expires_at - now).total_seconds() / 86400
        days = math.ceil(remaining)
        is_expired = entry.status is EntryStatus.EXPIRED or now > entry.custody.expires_at
        days_until_expiry = 0 if is_expired else max(0, days)
        return ExpiryStatus(
            is_expired=is_expired,
            days_until_expiry=days_until_expiry,
            should_refresh=days_until_expiry <= self.config.refresh_window_days,
        )

    def get_statistics(self) -> VaultStatistics:
        entries = list(self._entries.values())
        horizon = self.clock() + timedelta(days=self.config.refresh_window_days)

        def count(status: EntryStatus) -> int:
            return sum(1 for e in entries if e.status is status)

        average = (
            sum(e.custody.access_count for e in entries) / len(entries) if entries else 0.0
        )
        return VaultStatistics(
            total_entries=len(entries),
            active_entries=count(EntryStatus.ACTIVE),
            expired_entries=count(EntryStatus.EXPIRED),
            locked_entries=count(EntryStatus.LOCKED),
            refreshing_entries=count(EntryStatus.REFRESHING),
            average_access_count=round(average, 2),
            upcoming_expirations=sum(
                1 for e in entries
                if e.status is EntryStatus.ACTIVE and e.custody.expires_at < horizon
            ),
        )

    async def delete(self, entry_id: str) -> bool:
        """Remove an entry.

        Returns:
            True if the entry existed and was removed, False otherwise.
        """
        started = time.perf_counter()
        try:
            lock = self._lock_for(entry_id)
        except EntryNotFound:
            return False
        async with lock:
            entry = self._entries.pop(entry_id, None)
            if entry is None:
                return False
            try:
                await self._persist()
            except Exception:
                self._entries[entry_id] = entry
                raise
        self._locks.pop(entry_id, None)
        self.telemetry.emit(
            VaultOperation.ENTRY_DELETED,
            duration_ms=_elapsed_ms(started),
            credential_id=entry.credential_id,
            entry_id=entry_id,
        )
        logger.info("Vault entry deleted: cid=%s entry=%s", entry.credential_id, entry_id)
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    async def load(
        cls,
        config: Optional[VaultConfig] = None,
        telemetry: Optional[VaultTelemetry] = None,
        backend: Optional[VaultBackend] = None,
        clock: Clock = utcnow,
    ) -> "VaultStore":
        """Build a store and restore its entries from ``backend``.

        This is the primary constructor at process start.

        Returns:
            Populated VaultStore instance.
        """
        store = cls(config=config, telemetry=telemetry, backend=backend, clock=clock)
        store._entries.update(await store._backend.load())
        logger.info("Vault loaded: %d entr(ies)", len(store._entries))
        return store

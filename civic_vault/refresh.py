"""
Refresh Protocol — biometric-gated re-issuance of a stored credential.

A refresh runs entirely inside the entry's transaction:

    reserve session -> mark refreshing -> compute epochs -> re-mint
    -> regenerate bundle -> commit (credential, bundle, history, expiry)

The replacement entry is built aside and swapped in on commit, so a failure
at any step before the swap leaves the stored credential, bundle and
history untouched; the transaction restores ``active`` on the way out.
The biometric session is reserved for the whole refresh and consumed only
after a successful commit; any other outcome releases it.
"""
import time
import uuid
import logging
from collections.abc import Mapping
from typing import Any, Optional

from .biometric import BiometricSessionManager
from .exceptions import RefreshFailed, VaultError
from .identity import IdentityMinter, merge_profile
from .models import Clock, RefreshReason, RefreshRecord, RefreshResult
from .reputation import ReputationAssembler, epoch_for
from .telemetry import VaultOperation, VaultTelemetry
from .vault import VaultStore

logger = logging.getLogger("civic_vault.refresh")

UNKNOWN_EPOCH = "unknown"


class RefreshProtocol:
    """Re-issues vault credentials in place."""

    def __init__(
        self,
        store: VaultStore,
        minter: IdentityMinter,
        sessions: BiometricSessionManager,
        assembler: Optional[ReputationAssembler] = None,
        telemetry: Optional[VaultTelemetry] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.minter = minter
        self.sessions = sessions
        self.assembler = assembler
        self.telemetry = telemetry or store.telemetry
        self.clock = clock or store.clock

    async def refresh(
        self,
        entry_id: str,
        session_id: str,
        reason: RefreshReason = RefreshReason.USER_REQUEST,
        updates: Optional[Mapping[str, Any]] = None,
    ) -> RefreshResult:
        """Re-mint the entry's credential and extend its custody.

        Args:
            entry_id: Vault entry to refresh.
            session_id: Verified biometric session for the entry's subject.
            reason: Why the refresh was requested.
            updates: Optional activity-profile changes applied before re-minting.

        Raises:
            EntryNotFound, EntryExpired, EntryLocked: Entry precondition failed.
            SessionNotFound, SessionExpired, BiometricNotVerified: The session
                cannot authorize this refresh.
            RefreshFailed: A step after ``refreshing`` was set failed; the
                entry was rolled back.
        """
        started = time.perf_counter()
        reason = RefreshReason(reason)
        subject = credential_id = None
        refresh_id = f"refresh-{uuid.uuid4().hex[:12]}"
        try:
            async with self.store.transaction(entry_id) as txn:
                current = txn.entry
                subject = current.subject_did
                credential_id = current.credential_id
                self.sessions.reserve(session_id, subject, refresh_id)
                try:
                    txn.begin_refresh()
                    try:
                        now = self.clock()
                        new_epoch = epoch_for(now)
                        old_epoch = current.epoch or UNKNOWN_EPOCH

                        profile = self.minter.get_activity_profile(subject)
                        if updates:
                            profile = merge_profile(profile, updates)
                        credential = self.minter.reissue(current.credential, profile)

                        bundle = current.reputation_bundle
                        if bundle is not None and self.assembler is not None:
                            bundle = await self.assembler.assemble(credential, profile, new_epoch)

                        record = RefreshRecord(
                            refresh_id=refresh_id,
                            refreshed_at=now,
                            old_epoch=old_epoch,
                            new_epoch=new_epoch,
                            biometric_used=True,
                            trust_index_change=(
                                credential.trust_index - current.credential.trust_index
                            ),
                            reason=reason,
                        )
                        entry = await txn.commit_refresh(credential, bundle, record)
                    except Exception as err:
                        logger.warning("Refresh of %s failed: %s", entry_id, err)
                        raise RefreshFailed(entry_id, err) from err

                    self.sessions.consume(session_id)
                finally:
                    self.sessions.release(session_id, refresh_id)
                if updates:
                    self.minter.save_activity_profile(profile)
        except VaultError as err:
            self.telemetry.error(
                VaultOperation.IDENTITY_REFRESH,
                err,
                duration_ms=(time.perf_counter() - started) * 1000,
                credential_id=credential_id,
                entry_id=entry_id,
                subject=subject,
            )
            raise

        duration = (time.perf_counter() - started) * 1000
        self.telemetry.emit(
            VaultOperation.IDENTITY_REFRESH,
            duration_ms=duration,
            credential_id=entry.credential_id,
            entry_id=entry_id,
            subject=subject,
            refresh_reason=reason.value,
            old_epoch=record.old_epoch,
            new_epoch=record.new_epoch,
            trust_index_change=record.trust_index_change,
            tier=entry.credential.tier.value,
        )
        logger.info(
            "Credential refreshed: entry=%s epoch %s -> %s trust_delta=%+d",
            entry_id, record.old_epoch, record.new_epoch, record.trust_index_change,
        )
        return RefreshResult(
            entry=entry,
            record=record,
            bundle=entry.reputation_bundle,
            duration_ms=duration,
        )

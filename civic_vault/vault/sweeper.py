"""
Vault Expiry Sweeper — recurring pass that marks overdue entries as expired.

Each pass scans every entry and flips ``active`` entries whose ``expires_at``
has passed to ``expired``. The pass is idempotent: entries already expired,
locked or mid-refresh are left alone. Entries whose mutation lock is held are
skipped and picked up on the next pass.

When a ``BiometricSessionManager`` is supplied, expired biometric sessions
are purged in the same pass.
"""
import time
import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..exceptions import EntryNotFound
from ..telemetry import VaultOperation
from .store import VaultStore

if TYPE_CHECKING:
    from ..biometric import BiometricSessionManager

logger = logging.getLogger("civic_vault.vault")


class ExpirySweeper:
    """Interval-driven expiry pass over a ``VaultStore``."""

    def __init__(
        self,
        store: VaultStore,
        interval: Optional[float] = None,
        sessions: Optional["BiometricSessionManager"] = None,
    ):
        self.store = store
        self.interval = interval if interval is not None else store.config.sweep_interval
        self.sessions = sessions
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> dict:
        """Run one expiry pass.

        Returns:
            Stats dict with keys: scanned, expired, skipped, sessions_purged.
        """
        started = time.perf_counter()
        stats = {"scanned": 0, "expired": 0, "skipped": 0, "sessions_purged": 0}

        for entry_id in self.store.entry_ids():
            stats["scanned"] += 1
            if self.store.is_busy(entry_id):
                stats["skipped"] += 1
                continue
            try:
                if await self.store.expire_if_due(entry_id):
                    stats["expired"] += 1
            except EntryNotFound:
                # deleted while the pass was running
                stats["skipped"] += 1

        if self.sessions is not None:
            stats["sessions_purged"] = self.sessions.purge_expired()

        self.store.telemetry.emit(
            VaultOperation.EXPIRY_SWEEP,
            duration_ms=(time.perf_counter() - started) * 1000,
            expired_count=stats["expired"],
            total_scanned=stats["scanned"],
            skipped=stats["skipped"],
        )
        if stats["expired"]:
            logger.info(
                "Expiry sweep completed: %d of %d entries marked expired",
                stats["expired"], stats["scanned"],
            )
        return stats

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.error("Expiry sweep failed: %s", err)
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Start the recurring pass on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="civic-vault-expiry-sweep")
            logger.info("Expiry sweeper started (interval=%ss)", self.interval)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

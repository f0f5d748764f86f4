"""
Vault Backends — where vault entries live between process restarts.

``MemoryBackend`` keeps nothing (process-lifetime custody).
``JsonFileBackend`` writes the whole store as one orjson document, first to
a temporary file and then renamed over the target, so a crash never leaves a
half-written snapshot behind.

Security Note:
    Snapshots contain secret hashes, never raw secrets. Protect the file
    with filesystem permissions all the same.
"""
import os
import asyncio
import logging
from pathlib import Path
from typing import Protocol, Union

from ..models import VaultEntry
from .crypto import serialize_document, deserialize_document

logger = logging.getLogger("civic_vault.vault")

_SNAPSHOT_VERSION = 1


class VaultBackend(Protocol):
    async def load(self) -> dict[str, VaultEntry]:
        ...

    async def save(self, entries: dict[str, VaultEntry]) -> None:
        ...


class MemoryBackend:
    """No-op backend: entries live only in the store's own mapping."""

    async def load(self) -> dict[str, VaultEntry]:
        return {}

    async def save(self, entries: dict[str, VaultEntry]) -> None:
        return None


class JsonFileBackend:
    """Crash-consistent JSON snapshot of every vault entry."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        # saves share one temporary file, so writes run one at a time
        self._write_lock = asyncio.Lock()

    async def load(self) -> dict[str, VaultEntry]:
        """Read the snapshot, returning an empty mapping if none exists.

        Raises:
            ValueError: If the snapshot version is not supported.
        """
        if not self.path.exists():
            return {}
        document = deserialize_document(self.path.read_bytes())
        version = document.get("version")
        if version != _SNAPSHOT_VERSION:
            raise ValueError(
                f"Unsupported vault snapshot version {version} in {self.path}"
            )
        entries = {}
        for raw in document.get("entries", []):
            entry = VaultEntry.model_validate(raw)
            entries[entry.entry_id] = entry
        logger.info("Vault snapshot loaded from %s: %d entr(ies)", self.path, len(entries))
        return entries

    async def save(self, entries: dict[str, VaultEntry]) -> None:
        document = {
            "version": _SNAPSHOT_VERSION,
            "entries": [
                e.model_dump(mode="json", by_alias=True) for e in entries.values()
            ],
        }
        data = serialize_document(document)
        async with self._write_lock:
            await asyncio.to_thread(self._write, data)
        logger.debug("Vault snapshot written to %s (%d entries)", self.path, len(entries))

    def _write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp, "wb") as fp:
            fp.write(data)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp, self.path)

"""Identity Vault — time-bounded, attempt-limited custody of civic credentials.

Security Note (Threat Model):
    Unlock secrets are stored as salted scrypt hashes only. Entries and their
    reputation bundles are held in process memory, and in the snapshot file
    when a ``JsonFileBackend`` is configured. Encrypting that snapshot at
    rest is left to the deployment.
"""

from .config import VaultConfig, parse_subject_list
from .backends import VaultBackend, MemoryBackend, JsonFileBackend
from .store import VaultStore, EntryTransaction
from .sweeper import ExpirySweeper

__all__ = [
    "VaultConfig",
    "parse_subject_list",
    "VaultBackend",
    "MemoryBackend",
    "JsonFileBackend",
    "VaultStore",
    "EntryTransaction",
    "ExpirySweeper",
]

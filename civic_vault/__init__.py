"""Civic Vault.

Mints civic identity credentials from activity profiles, keeps them in a
time-bounded custody vault behind attempt-limited unlock, and re-issues
them through a biometric-gated refresh.
"""
from .version import __version__
from .exceptions import (
    VaultError,
    InvalidSubjectFormat,
    MintingValidationFailed,
    EntryNotFound,
    EntryExpired,
    EntryLocked,
    UnlockVerificationFailed,
    SessionNotFound,
    SessionExpired,
    BiometricNotVerified,
    RefreshFailed,
)
from .models import (
    ActivityProfile,
    BiometricModality,
    BiometricSession,
    CredentialToken,
    EntryStatus,
    RefreshReason,
    RefreshRecord,
    RefreshResult,
    Tier,
    UnlockMethod,
    VaultEntry,
)
from .telemetry import VaultOperation, VaultTelemetry
from .identity import ActivityProfileStore, IdentityMinter
from .vault import (
    ExpirySweeper,
    JsonFileBackend,
    MemoryBackend,
    VaultConfig,
    VaultStore,
)
from .biometric import BiometricSessionManager
from .reputation import ReputationAssembler, SimulatedReputationAssembler
from .refresh import RefreshProtocol

__all__ = [
    "__version__",
    "VaultError",
    "InvalidSubjectFormat",
    "MintingValidationFailed",
    "EntryNotFound",
    "EntryExpired",
    "EntryLocked",
    "UnlockVerificationFailed",
    "SessionNotFound",
    "SessionExpired",
    "BiometricNotVerified",
    "RefreshFailed",
    "ActivityProfile",
    "BiometricModality",
    "BiometricSession",
    "CredentialToken",
    "EntryStatus",
    "RefreshReason",
    "RefreshRecord",
    "RefreshResult",
    "Tier",
    "UnlockMethod",
    "VaultEntry",
    "VaultOperation",
    "VaultTelemetry",
    "ActivityProfileStore",
    "IdentityMinter",
    "ExpirySweeper",
    "JsonFileBackend",
    "MemoryBackend",
    "VaultConfig",
    "VaultStore",
    "BiometricSessionManager",
    "ReputationAssembler",
    "SimulatedReputationAssembler",
    "RefreshProtocol",
]

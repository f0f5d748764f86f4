"""
Data models for credentials, vault entries, refresh records and biometric sessions.

All models are pydantic v2 models with snake_case attributes and camelCase
aliases, so ``model_dump(mode="json", by_alias=True)`` yields the exported
wire shape. Timestamps are timezone-aware UTC datetimes.
"""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Clock = Callable[[], datetime]

SUBJECT_PATTERN = re.compile(r"^did:[a-z0-9]+:[a-zA-Z0-9\-_]+$")


def utcnow() -> datetime:
    """Default clock: current aware UTC time."""
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    """Ordered privilege classification, lowest first."""

    CITIZEN = "Citizen"
    MODERATOR = "Moderator"
    GOVERNOR = "Governor"
    COMMANDER = "Commander"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)

    @property
    def code(self) -> str:
        return self.value[0].lower()


class EntryStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    LOCKED = "locked"
    REFRESHING = "refreshing"


class UnlockMethod(str, Enum):
    BIOMETRIC = "biometric"
    PASSPHRASE = "passphrase"


class RefreshReason(str, Enum):
    EXPIRY = "expiry"
    USER_REQUEST = "user_request"
    SECURITY_UPDATE = "security_update"


class BiometricModality(str, Enum):
    FINGERPRINT = "fingerprint"
    FACIAL = "facial"
    RETINAL = "retinal"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True,
    )


# ---------------------------------------------------------------------------
# Activity profile
# ---------------------------------------------------------------------------

class ReputationCounts(_Model):
    positive: int = Field(default=0, ge=0)
    neutral: int = Field(default=0, ge=0)
    negative: int = Field(default=0, ge=0)


class ActivityProfile(_Model):
    """Behavioral snapshot of one subject, maintained outside the vault."""

    did: str
    trust_index: int = Field(ge=0, le=100)
    streak_days: int = Field(default=0, ge=0)
    vote_history: int = Field(default=0, ge=0)
    engagement_level: int = Field(default=0, ge=0, le=100)
    last_active_at: datetime = Field(default_factory=utcnow)
    reputation: ReputationCounts = Field(default_factory=ReputationCounts)


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

class CredentialMetadata(_FrozenModel):
    issuer: str
    schema_version: str
    network: str
    valid_until: datetime
    last_activity: datetime
    vote_count: int = Field(ge=0)
    engagement_score: int = Field(ge=0, le=100)


class CredentialToken(_FrozenModel):
    """Issued civic credential. Immutable; a refresh issues a new token."""

    id: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    issued_at: datetime
    tier: Tier
    trust_index: int = Field(ge=0, le=100)
    streak_days: int = Field(ge=0)
    metadata: CredentialMetadata


class TierRequirement(_FrozenModel):
    min_trust_index: int
    min_engagement: int
    min_votes: int
    description: str


# ---------------------------------------------------------------------------
# Vault entry
# ---------------------------------------------------------------------------

class RefreshRecord(_FrozenModel):
    refresh_id: str
    refreshed_at: datetime
    old_epoch: str
    new_epoch: str
    biometric_used: bool
    trust_index_change: int
    reason: RefreshReason


class CustodyMetadata(_Model):
    stored_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    access_count: int = Field(default=0, ge=0)
    failed_attempts: int = Field(default=0, ge=0)
    biometric_secret_hash: Optional[str] = None
    passphrase_secret_hash: Optional[str] = None
    refresh_history: list[RefreshRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_custody_window(self) -> "CustodyMetadata":
        """Ensure expiry never precedes storage."""
        if self.expires_at < self.stored_at:
            raise ValueError(
                f"expires_at ({self.expires_at.isoformat()}) precedes "
                f"stored_at ({self.stored_at.isoformat()})"
            )
        return self


class VaultEntry(_Model):
    """Custody record pairing a credential with its unlock secrets."""

    entry_id: str
    credential_id: str
    subject_did: str
    credential: CredentialToken
    reputation_bundle: Optional[dict[str, Any]] = None
    custody: CustodyMetadata
    status: EntryStatus = EntryStatus.ACTIVE

    def secret_hash_for(self, method: UnlockMethod) -> Optional[str]:
        if method is UnlockMethod.BIOMETRIC:
            return self.custody.biometric_secret_hash
        return self.custody.passphrase_secret_hash

    @property
    def epoch(self) -> Optional[str]:
        if self.reputation_bundle is None:
            return None
        return self.reputation_bundle.get("epoch")


# ---------------------------------------------------------------------------
# Biometric session
# ---------------------------------------------------------------------------

class BiometricSession(_Model):
    session_id: str
    subject_did: str
    started_at: datetime
    expires_at: datetime
    verified: bool = False
    consumed: bool = False
    reserved_by: Optional[str] = None
    modality: BiometricModality = BiometricModality.FINGERPRINT
    quality_score: int = Field(default=0, ge=0, le=100)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class VerificationResult(_FrozenModel):
    success: bool
    quality_score: int
    reason: str


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class MintingResult(_FrozenModel):
    success: bool
    credential: Optional[CredentialToken] = None
    error: Optional[str] = None
    minted_at: datetime
    processing_time_ms: float
    validation_passed: bool
    tier_assigned: bool


class CredentialValidity(_FrozenModel):
    is_valid: bool
    reason: str
    expires_in_days: int


class UnlockResult(_FrozenModel):
    success: bool = True
    entry: VaultEntry
    method: UnlockMethod
    unlocked_at: datetime
    access_count: int
    remaining_attempts: int


class ExpiryStatus(_FrozenModel):
    is_expired: bool
    days_until_expiry: int
    should_refresh: bool


class VaultStatistics(_FrozenModel):
    total_entries: int
    active_entries: int
    expired_entries: int
    locked_entries: int
    refreshing_entries: int
    average_access_count: float
    upcoming_expirations: int


class ExportResult(_FrozenModel):
    success: bool
    filename: str
    file_size_bytes: int = 0
    error: Optional[str] = None


class RefreshResult(_FrozenModel):
    entry: VaultEntry
    record: RefreshRecord
    bundle: Optional[dict[str, Any]] = None
    duration_ms: float

"""
Identity Minter — derives a tiered credential token from an activity profile.

Tier rules are evaluated top-down:
    Commander: subject is on the configured bootstrap allow-list
    Governor: trust >= 90, engagement >= 85, votes >= 50
    Moderator: trust >= 75, engagement >= 70, votes >= 25
    Citizen: everyone else

The minter holds no state of its own beyond the activity profile store it
reads from; the same profile always yields the same tier.
"""
import time
import logging
import math
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Optional

from pydantic import ValidationError

from ..exceptions import InvalidSubjectFormat, MintingValidationFailed
from ..models import (
    SUBJECT_PATTERN,
    ActivityProfile,
    Clock,
    CredentialMetadata,
    CredentialToken,
    CredentialValidity,
    MintingResult,
    Tier,
    TierRequirement,
    utcnow,
)
from ..telemetry import VaultOperation, VaultTelemetry
from ..vault.config import VaultConfig
from ..vault.crypto import derive_credential_id
from .activity import ActivityProfileStore

logger = logging.getLogger("civic_vault.identity")

CREDENTIAL_VALIDITY_DAYS = 365

TIER_REQUIREMENTS: dict[Tier, TierRequirement] = {
    Tier.CITIZEN: TierRequirement(
        min_trust_index=0, min_engagement=0, min_votes=0,
        description="Basic civic participation level",
    ),
    Tier.MODERATOR: TierRequirement(
        min_trust_index=75, min_engagement=70, min_votes=25,
        description="Trusted community moderator",
    ),
    Tier.GOVERNOR: TierRequirement(
        min_trust_index=90, min_engagement=85, min_votes=50,
        description="Governance leader with high trust",
    ),
    Tier.COMMANDER: TierRequirement(
        min_trust_index=95, min_engagement=90, min_votes=75,
        description="Reserved for configured bootstrap subjects",
    ),
}

# threshold tiers, highest first; Commander is granted by allow-list only
_THRESHOLD_TIERS = (Tier.GOVERNOR, Tier.MODERATOR)


def meets(profile: ActivityProfile, requirement: TierRequirement) -> bool:
    return (
        profile.trust_index >= requirement.min_trust_index
        and profile.engagement_level >= requirement.min_engagement
        and profile.vote_history >= requirement.min_votes
    )


def determine_tier(
    profile: ActivityProfile, bootstrap_subjects: frozenset[str] = frozenset(),
) -> Tier:
    """Classify a profile into a tier.

    Args:
        profile: Activity snapshot of the subject.
        bootstrap_subjects: Subjects that always receive ``Tier.COMMANDER``.

    Returns:
        The highest tier whose rule the profile satisfies.
    """
    if profile.did in bootstrap_subjects:
        return Tier.COMMANDER
    for tier in _THRESHOLD_TIERS:
        if meets(profile, TIER_REQUIREMENTS[tier]):
            return tier
    return Tier.CITIZEN


def validate_subject(did: str) -> str:
    if not isinstance(did, str) or not SUBJECT_PATTERN.match(did):
        raise InvalidSubjectFormat(str(did))
    return did


class IdentityMinter:
    """Mints and re-issues civic credential tokens."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        profiles: Optional[ActivityProfileStore] = None,
        telemetry: Optional[VaultTelemetry] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or VaultConfig()
        self.profiles = profiles or ActivityProfileStore(clock=clock)
        self.telemetry = telemetry or VaultTelemetry(clock=clock)
        self.clock = clock
        self._bootstrap = frozenset(self.config.bootstrap_subjects)

    def determine_tier(self, profile: ActivityProfile) -> Tier:
        return determine_tier(profile, self._bootstrap)

    def _build_token(
        self, profile: ActivityProfile, credential_id: Optional[str] = None,
    ) -> CredentialToken:
        now = self.clock()
        try:
            tier = self.determine_tier(profile)
            cid = credential_id or derive_credential_id(profile.did, tier.code, now)
            return CredentialToken(
                id=cid,
                subject=profile.did,
                issued_at=now,
                tier=tier,
                trust_index=profile.trust_index,
                streak_days=profile.streak_days,
                metadata=CredentialMetadata(
                    issuer=self.config.issuer,
                    schema_version=self.config.schema_version,
                    network=self.config.network,
                    valid_until=now + timedelta(days=CREDENTIAL_VALIDITY_DAYS),
                    last_activity=profile.last_active_at,
                    vote_count=profile.vote_history,
                    engagement_score=profile.engagement_level,
                ),
            )
        except (ValidationError, ValueError) as err:
            raise MintingValidationFailed(
                f"Credential for {profile.did} failed validation: {err}"
            ) from err

    def mint(self, did: str) -> CredentialToken:
        """Mint a new credential for ``did``.

        Raises:
            InvalidSubjectFormat: ``did`` is not ``did:<method>:<identifier>``.
            MintingValidationFailed: The token could not be assembled.
        """
        started = time.perf_counter()
        try:
            validate_subject(did)
            profile = self.profiles.get(did)
            token = self._build_token(profile)
        except (InvalidSubjectFormat, MintingValidationFailed) as err:
            self.telemetry.error(
                VaultOperation.IDENTITY_MINTED, err,
                duration_ms=(time.perf_counter() - started) * 1000, subject=str(did),
            )
            raise
        duration = (time.perf_counter() - started) * 1000
        self.telemetry.emit(
            VaultOperation.IDENTITY_MINTED,
            duration_ms=duration,
            credential_id=token.id,
            subject=did,
            tier=token.tier.value,
            trust_index=token.trust_index,
        )
        logger.info(
            "Civic identity minted: cid=%s tier=%s trust=%d duration=%.1fms",
            token.id, token.tier.value, token.trust_index, duration,
        )
        return token

    def mint_with_result(self, did: str) -> MintingResult:
        """Mint without raising; failures are reported in the result."""
        started = time.perf_counter()
        try:
            token = self.mint(did)
        except (InvalidSubjectFormat, MintingValidationFailed) as err:
            return MintingResult(
                success=False,
                error=f"Minting failed: {err}",
                minted_at=self.clock(),
                processing_time_ms=(time.perf_counter() - started) * 1000,
                validation_passed=not isinstance(err, InvalidSubjectFormat),
                tier_assigned=False,
            )
        return MintingResult(
            success=True,
            credential=token,
            minted_at=self.clock(),
            processing_time_ms=(time.perf_counter() - started) * 1000,
            validation_passed=True,
            tier_assigned=True,
        )

    def reissue(self, credential: CredentialToken, profile: ActivityProfile) -> CredentialToken:
        """Issue a replacement token that keeps ``credential.id``.

        Tier, trust, streak and metadata are recomputed from ``profile``.

        Raises:
            MintingValidationFailed: Profile belongs to another subject or the
                token could not be assembled.
        """
        if profile.did != credential.subject:
            raise MintingValidationFailed(
                f"Profile {profile.did} does not belong to {credential.subject}"
            )
        return self._build_token(profile, credential_id=credential.id)

    def get_activity_profile(self, did: str) -> ActivityProfile:
        return self.profiles.get(validate_subject(did))

    def update_activity_profile(self, did: str, updates: Mapping[str, Any]) -> ActivityProfile:
        return self.profiles.update(validate_subject(did), updates)

    def save_activity_profile(self, profile: ActivityProfile) -> None:
        """Store a complete profile, replacing the subject's current one."""
        validate_subject(profile.did)
        self.profiles.put(profile)

    def verify_validity(self, credential: CredentialToken) -> CredentialValidity:
        """Check expiry and structure of an issued token."""
        remaining = credential.metadata.valid_until - self.clock()
        expires_in = math.ceil(remaining.total_seconds() / 86400)
        if expires_in <= 0:
            return CredentialValidity(
                is_valid=False, reason="Identity token has expired", expires_in_days=0,
            )
        if not credential.id or not SUBJECT_PATTERN.match(credential.subject):
            return CredentialValidity(
                is_valid=False, reason="Invalid identity structure", expires_in_days=expires_in,
            )
        return CredentialValidity(
            is_valid=True, reason="Identity is valid", expires_in_days=expires_in,
        )

    @staticmethod
    def tier_requirements() -> dict[Tier, TierRequirement]:
        return dict(TIER_REQUIREMENTS)

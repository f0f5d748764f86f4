"""Activity profiles keyed by subject.

Stands in for the external activity service: known subjects come from the
seeded mapping, unknown ones get a synthesized profile that is then cached.
"""
import random
import logging
from collections.abc import Mapping
from typing import Any, Optional

from ..models import ActivityProfile, Clock, ReputationCounts, utcnow

logger = logging.getLogger("civic_vault.identity")


def _demo_profiles(now) -> list[ActivityProfile]:
    return [
        ActivityProfile(
            did="did:civic:commander-mark", trust_index=95, streak_days=14,
            vote_history=87, engagement_level=92, last_active_at=now,
            reputation=ReputationCounts(positive=89, neutral=8, negative=3),
        ),
        ActivityProfile(
            did="did:civic:verifier-alice", trust_index=81, streak_days=6,
            vote_history=34, engagement_level=78, last_active_at=now,
            reputation=ReputationCounts(positive=72, neutral=22, negative=6),
        ),
        ActivityProfile(
            did="did:civic:citizen-bob", trust_index=67, streak_days=3,
            vote_history=12, engagement_level=54, last_active_at=now,
            reputation=ReputationCounts(positive=58, neutral=31, negative=11),
        ),
    ]


class ActivityProfileStore:
    """Cache of activity profiles, synthesizing unknown subjects on first read."""

    def __init__(
        self,
        profiles: Optional[Mapping[str, ActivityProfile]] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utcnow,
    ):
        self._profiles: dict[str, ActivityProfile] = dict(profiles or {})
        self._rng = rng or random.Random()
        self._clock = clock

    @classmethod
    def with_demo_profiles(
        cls, rng: Optional[random.Random] = None, clock: Clock = utcnow,
    ) -> "ActivityProfileStore":
        now = clock()
        return cls({p.did: p for p in _demo_profiles(now)}, rng=rng, clock=clock)

    def _synthesize(self, did: str) -> ActivityProfile:
        rand = self._rng.randrange
        return ActivityProfile(
            did=did,
            trust_index=rand(50, 90),
            streak_days=rand(1, 11),
            vote_history=rand(5, 30),
            engagement_level=rand(45, 80),
            last_active_at=self._clock(),
            reputation=ReputationCounts(
                positive=rand(50, 80), neutral=rand(15, 40), negative=rand(5, 20),
            ),
        )

    def get(self, did: str) -> ActivityProfile:
        """Return a copy of the subject's profile, synthesizing one if unknown."""
        profile = self._profiles.get(did)
        if profile is None:
            profile = self._synthesize(did)
            self._profiles[did] = profile
            logger.debug("Synthesized activity profile for %s", did)
        return profile.model_copy(deep=True)

    def put(self, profile: ActivityProfile) -> None:
        self._profiles[profile.did] = profile.model_copy(deep=True)

    def update(self, did: str, updates: Mapping[str, Any]) -> ActivityProfile:
        """Merge ``updates`` onto the subject's profile and store the result.

        Raises:
            ValueError: If ``updates`` tries to change the subject or holds
                out-of-range values.
        """
        merged = merge_profile(self.get(did), updates)
        self._profiles[did] = merged
        logger.info("Activity profile updated for %s", did)
        return merged.model_copy(deep=True)

    def __contains__(self, did: object) -> bool:
        return did in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)


def merge_profile(profile: ActivityProfile, updates: Mapping[str, Any]) -> ActivityProfile:
    """Return a validated copy of ``profile`` with ``updates`` applied.

    ``updates`` may use attribute names or their camelCase aliases.
    """
    aliases = {
        field.alias: name for name, field in ActivityProfile.model_fields.items()
        if field.alias
    }
    normalized = {aliases.get(key, key): value for key, value in updates.items()}
    did = normalized.get("did", profile.did)
    if did != profile.did:
        raise ValueError(f"Cannot move activity profile {profile.did} to {did}")
    return ActivityProfile.model_validate({**profile.model_dump(), **normalized})

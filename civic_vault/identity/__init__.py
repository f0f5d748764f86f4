"""Civic identity minting: activity profiles in, tiered credential tokens out."""

from .activity import ActivityProfileStore, merge_profile
from .minter import (
    IdentityMinter,
    TIER_REQUIREMENTS,
    determine_tier,
    validate_subject,
)

__all__ = [
    "ActivityProfileStore",
    "merge_profile",
    "IdentityMinter",
    "TIER_REQUIREMENTS",
    "determine_tier",
    "validate_subject",
]

"""
Vault Configuration — validated settings for custody, lockout and hashing.

Reads overrides from environment variables in the format:
    CIVIC_VAULT_MAX_ATTEMPTS = <integer>
    CIVIC_VAULT_BOOTSTRAP_SUBJECTS = did:civic:a,did:civic:b

Security Note:
    Bootstrap subjects always receive the top tier. Keep the list empty in
    production unless a subject genuinely needs the carve-out.
"""
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models import SUBJECT_PATTERN

logger = logging.getLogger("civic_vault.vault")

_ENV_PREFIX = "CIVIC_VAULT_"

# env suffix -> (field name, parser)
_ENV_FIELDS = {
    "MAX_ATTEMPTS": ("max_unlock_attempts", int),
    "ENTRY_LIFETIME_DAYS": ("entry_lifetime_days", int),
    "REFRESH_WINDOW_DAYS": ("refresh_window_days", int),
    "SWEEP_INTERVAL": ("sweep_interval", float),
    "SESSION_TTL": ("session_ttl", int),
    "MATCH_RATE": ("biometric_match_rate", float),
    "SCRYPT_N": ("scrypt_n", int),
    "EXPORT_DIR": ("export_dir", str),
    "STORE_PATH": ("store_path", str),
}


def parse_subject_list(raw: Optional[str]) -> list[str]:
    """Split a comma-separated subject list, dropping blanks.

    Args:
        raw: Value of CIVIC_VAULT_BOOTSTRAP_SUBJECTS (may be None).

    Returns:
        List of stripped subject identifiers.
    """
    if not raw or not raw.strip():
        return []
    return [s.strip() for s in raw.split(",") if s.strip()]


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    max_unlock_attempts: int = Field(default=3, ge=1, le=20)
    entry_lifetime_days: int = Field(default=365, ge=1)
    refresh_window_days: int = Field(default=30, ge=0)
    sweep_interval: float = Field(default=60.0, ge=1)
    session_ttl: int = Field(default=300, ge=10)
    biometric_match_rate: float = Field(default=0.85, ge=0.0, le=1.0)
    bootstrap_subjects: list[str] = Field(default_factory=list)
    issuer: str = Field(default="TruthUnveiled DAO Identity Registry")
    network: str = Field(default="civic-testnet")
    schema_version: str = Field(default="1.0.0")
    scrypt_n: int = Field(default=2 ** 14, gt=1)
    scrypt_r: int = Field(default=8, ge=1)
    scrypt_p: int = Field(default=1, ge=1)
    export_dir: str = Field(default=".")
    store_path: Optional[str] = None

    @field_validator("scrypt_n")
    @classmethod
    def validate_scrypt_cost(cls, v: int) -> int:
        """scrypt requires the cost parameter to be a power of two."""
        if v & (v - 1):
            raise ValueError(f"scrypt_n must be a power of two, got {v}")
        return v

    @field_validator("bootstrap_subjects")
    @classmethod
    def validate_bootstrap_subjects(cls, v: list[str]) -> list[str]:
        """Every bootstrap subject must be a well-formed DID."""
        for subject in v:
            if not SUBJECT_PATTERN.match(subject):
                raise ValueError(f"Invalid bootstrap subject: {subject!r}")
        return v

    @model_validator(mode="after")
    def validate_refresh_window(self) -> "VaultConfig":
        """Refresh warnings must start before the entry expires."""
        if self.refresh_window_days >= self.entry_lifetime_days:
            raise ValueError(
                f"refresh_window_days ({self.refresh_window_days}) must be "
                f"shorter than entry_lifetime_days ({self.entry_lifetime_days})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides) -> "VaultConfig":
        """Create VaultConfig from CIVIC_VAULT_* environment variables.

        Keyword overrides take precedence over the environment.

        Returns:
            Populated VaultConfig instance.
        """
        values: dict = {}
        for suffix, (name, parser) in _ENV_FIELDS.items():
            raw = os.environ.get(f"{_ENV_PREFIX}{suffix}")
            if raw is not None and raw.strip():
                values[name] = parser(raw.strip())
        subjects = parse_subject_list(os.environ.get(f"{_ENV_PREFIX}BOOTSTRAP_SUBJECTS"))
        if subjects:
            values["bootstrap_subjects"] = subjects
        values.update(overrides)
        config = cls(**values)
        logger.debug(
            "Loaded vault config: max_attempts=%d lifetime=%dd bootstrap_subjects=%d",
            config.max_unlock_attempts, config.entry_lifetime_days,
            len(config.bootstrap_subjects),
        )
        return config

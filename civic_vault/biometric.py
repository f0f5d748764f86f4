"""
Biometric Session Manager — short-lived challenge sessions for refresh and unlock.

A session is created for one subject, verified against a sample, and can then
authorize exactly one refresh. Sessions polled after their ``expires_at``
are dropped and reported as expired.

The matcher is simulated: a non-empty sample matches with probability
``biometric_match_rate``. Replace ``_match`` with a real sensor or attestation
call in production.

Security Note:
    Raw samples are never stored or logged.
"""
import time
import random
import asyncio
import logging
import secrets
from datetime import timedelta
from typing import Optional

from .exceptions import BiometricNotVerified, SessionExpired, SessionNotFound, VaultError
from .identity.minter import validate_subject
from .models import (
    BiometricModality,
    BiometricSession,
    Clock,
    VerificationResult,
    utcnow,
)
from .telemetry import VaultOperation, VaultTelemetry
from .vault.config import VaultConfig

logger = logging.getLogger("civic_vault.biometric")


class BiometricSessionManager:
    """Owns every biometric session; other components only consult it."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        telemetry: Optional[VaultTelemetry] = None,
        rng: Optional[random.Random] = None,
        clock: Clock = utcnow,
        scan_delay: float = 0.0,
    ):
        self.config = config or VaultConfig()
        self.telemetry = telemetry or VaultTelemetry(clock=clock)
        self.clock = clock
        self.scan_delay = scan_delay
        self._rng = rng or random.SystemRandom()
        self._sessions: dict[str, BiometricSession] = {}

    def _get_live(self, session_id: str) -> BiometricSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if session.is_expired(self.clock()):
            del self._sessions[session_id]
            logger.info("Biometric session %s polled after expiry; dropped", session_id)
            raise SessionExpired(session_id)
        return session

    def _match(self, sample: str) -> tuple[bool, int]:
        if not sample:
            return False, 0
        if self._rng.random() < self.config.biometric_match_rate:
            return True, self._rng.randint(85, 99)
        return False, self._rng.randint(20, 59)

    def create_session(
        self,
        subject_did: str,
        modality: BiometricModality = BiometricModality.FINGERPRINT,
    ) -> BiometricSession:
        """Open a challenge session valid for ``session_ttl`` seconds."""
        validate_subject(subject_did)
        now = self.clock()
        session = BiometricSession(
            session_id=f"bio-sess-{secrets.token_hex(8)}",
            subject_did=subject_did,
            started_at=now,
            expires_at=now + timedelta(seconds=self.config.session_ttl),
            modality=BiometricModality(modality),
        )
        self._sessions[session.session_id] = session
        logger.debug(
            "Biometric session %s opened for %s (%s)",
            session.session_id, subject_did, session.modality.value,
        )
        return session.model_copy()

    async def verify(self, session_id: str, sample: str) -> VerificationResult:
        """Score a sample against the session.

        Raises:
            SessionNotFound: Unknown session id.
            SessionExpired: Session is past its ``expires_at``.
            BiometricNotVerified: Session was already used for a refresh.
        """
        started = time.perf_counter()
        try:
            session = self._get_live(session_id)
            if session.consumed:
                raise BiometricNotVerified(session_id, "session already used")
            if self.scan_delay > 0:
                await asyncio.sleep(self.scan_delay)
                # the session may have lapsed during the scan
                session = self._get_live(session_id)
        except VaultError as err:
            self.telemetry.error(
                VaultOperation.BIOMETRIC_VERIFICATION,
                err,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
            raise

        success, quality = self._match(sample)
        if success:
            session.verified = True
            session.quality_score = quality
        reason = "Biometric verified" if success else (
            "Empty biometric sample" if not sample else "Biometric mismatch"
        )
        self.telemetry.emit(
            VaultOperation.BIOMETRIC_VERIFICATION,
            success=success,
            duration_ms=(time.perf_counter() - started) * 1000,
            subject=session.subject_did,
            session_id=session_id,
            modality=session.modality.value,
            quality_score=quality,
        )
        return VerificationResult(success=success, quality_score=quality, reason=reason)

    def authorize(self, session_id: str, subject_did: str) -> BiometricSession:
        """Check that a session may authorize an operation for ``subject_did``.

        Raises:
            SessionNotFound: Unknown session id.
            SessionExpired: Session is past its ``expires_at``.
            BiometricNotVerified: Not verified, already used, or for another subject.
        """
        return self._check(session_id, subject_did).model_copy()

    def _check(self, session_id: str, subject_did: str) -> BiometricSession:
        session = self._get_live(session_id)
        if session.consumed:
            raise BiometricNotVerified(session_id, "session already used")
        if session.reserved_by is not None:
            raise BiometricNotVerified(session_id, "session is authorizing another operation")
        if not session.verified:
            raise BiometricNotVerified(session_id)
        if session.subject_did != subject_did:
            raise BiometricNotVerified(session_id, "session belongs to another subject")
        return session

    def reserve(self, session_id: str, subject_did: str, holder: str) -> BiometricSession:
        """Authorize and claim a session for ``holder`` in one step.

        While reserved, the session cannot authorize anything else. The
        holder must either ``consume`` it after success or ``release`` it.

        Raises:
            SessionNotFound: Unknown session id.
            SessionExpired: Session is past its ``expires_at``.
            BiometricNotVerified: Not verified, already used or reserved, or
                for another subject.
        """
        session = self._check(session_id, subject_did)
        session.reserved_by = holder
        logger.debug("Biometric session %s reserved by %s", session_id, holder)
        return session.model_copy()

    def release(self, session_id: str, holder: str) -> None:
        """Drop ``holder``'s reservation; no-op once consumed or not held."""
        session = self._sessions.get(session_id)
        if session is not None and session.reserved_by == holder:
            session.reserved_by = None
            logger.debug("Biometric session %s released by %s", session_id, holder)

    def consume(self, session_id: str) -> None:
        """Mark a session as used so it cannot authorize again."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.consumed = True
            session.reserved_by = None
            logger.debug("Biometric session %s consumed", session_id)

    def get_session(self, session_id: str) -> BiometricSession:
        return self._get_live(session_id).model_copy()

    def purge_expired(self) -> int:
        """Drop every expired session; returns how many were removed."""
        now = self.clock()
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug("Purged %d expired biometric session(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)

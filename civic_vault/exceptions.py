"""
Vault Exceptions — error taxonomy for minting, custody, biometrics and refresh.

Validation errors (``InvalidSubjectFormat``, ``MintingValidationFailed``) are
raised straight to the caller. ``EntryExpired`` and ``EntryLocked`` are
terminal for the entry and flagged non-retryable.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for every error raised by civic_vault."""

    retryable: bool = True

    def __init__(self, message: str, *, entry_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entry_id = entry_id

    def __str__(self) -> str:
        return self.message


class InvalidSubjectFormat(VaultError, ValueError):
    """Subject identifier does not match ``did:<method>:<identifier>``."""

    retryable = False

    def __init__(self, subject: str):
        super().__init__(f"Invalid subject format: {subject!r}")
        self.subject = subject


class MintingValidationFailed(VaultError, ValueError):
    """Tier assignment or identifier generation could not complete."""

    retryable = False


class EntryNotFound(VaultError, KeyError):
    """No vault entry with the given id."""

    retryable = False

    def __init__(self, entry_id: str):
        super().__init__(f"Vault entry not found: {entry_id}", entry_id=entry_id)


class EntryExpired(VaultError):
    retryable = False

    def __init__(self, entry_id: str):
        super().__init__(f"Vault entry has expired: {entry_id}", entry_id=entry_id)


class EntryLocked(VaultError):
    retryable = False

    def __init__(self, entry_id: str, reason: str = "maximum unlock attempts exceeded"):
        super().__init__(f"Vault entry is locked ({reason}): {entry_id}", entry_id=entry_id)
        self.reason = reason


class UnlockVerificationFailed(VaultError):
    """Secret did not match; ``remaining_attempts`` tells the caller how many are left."""

    def __init__(self, entry_id: str, remaining_attempts: int):
        super().__init__(
            f"Unlock verification failed for {entry_id} "
            f"({remaining_attempts} attempt(s) remaining)",
            entry_id=entry_id,
        )
        self.remaining_attempts = remaining_attempts
        self.retryable = remaining_attempts > 0


class SessionNotFound(VaultError):
    def __init__(self, session_id: str):
        super().__init__(f"Biometric session not found: {session_id}")
        self.session_id = session_id


class SessionExpired(VaultError):
    retryable = False

    def __init__(self, session_id: str):
        super().__init__(f"Biometric session expired: {session_id}")
        self.session_id = session_id


class BiometricNotVerified(VaultError):
    """Session cannot authorize: unverified, already used, or bound to another subject."""

    def __init__(self, session_id: str, reason: str = "session not verified"):
        super().__init__(f"Biometric session {session_id} cannot authorize: {reason}")
        self.session_id = session_id
        self.reason = reason


class RefreshFailed(VaultError):
    """Refresh aborted mid-flight; the entry was rolled back to ``active``."""

    def __init__(self, entry_id: str, cause: BaseException):
        super().__init__(f"Refresh failed for {entry_id}: {cause}", entry_id=entry_id)
        self.cause = cause

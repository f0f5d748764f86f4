"""
Vault Telemetry — fire-and-forget audit events for vault operations.

Each event carries the operation, the affected identifiers, a duration and a
success flag. Events are logged and kept in a bounded in-memory history that
can be summarised with ``metrics()`` or exported as a JSON-ready snapshot.

Security Note:
    Never pass secret material in ``details``. Only identifiers, counters,
    reasons and durations belong in an audit event.
"""
import logging
from collections import Counter, deque
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .models import Clock, utcnow

logger = logging.getLogger("civic_vault.telemetry")

_DEFAULT_MAX_HISTORY = 1000
_RECENT_ERRORS = 10


class VaultOperation(str, Enum):
    IDENTITY_MINTED = "identity_minted"
    ENTRY_CREATED = "entry_created"
    ENTRY_UNLOCKED = "entry_unlocked"
    ENTRY_LOCKED = "entry_locked"
    ENTRY_DELETED = "entry_deleted"
    BIOMETRIC_VERIFICATION = "biometric_verification"
    IDENTITY_REFRESH = "identity_refresh"
    VAULT_ACCESS = "vault_access"
    EXPIRY_SWEEP = "expiry_sweep"
    BUNDLE_EXPORT = "bundle_export"
    ERROR_OCCURRED = "error_occurred"


class TelemetryEvent(BaseModel):
    timestamp: datetime
    operation: VaultOperation
    credential_id: Optional[str] = None
    entry_id: Optional[str] = None
    subject: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    success: bool = True


class VaultTelemetry:
    """Bounded audit log shared by every vault component."""

    def __init__(self, max_history: int = _DEFAULT_MAX_HISTORY, clock: Clock = utcnow):
        self._history: deque[TelemetryEvent] = deque(maxlen=max_history)
        self._clock = clock

    def emit(
        self,
        operation: VaultOperation,
        *,
        success: bool = True,
        duration_ms: float = 0.0,
        credential_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        subject: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Record an event. Never raises."""
        try:
            event = TelemetryEvent(
                timestamp=self._clock(),
                operation=operation,
                credential_id=credential_id,
                entry_id=entry_id,
                subject=subject,
                details=details,
                duration_ms=round(duration_ms, 3),
                success=success,
            )
            self._history.append(event)
        except Exception as err:
            logger.error("Failed to record telemetry event %s: %s", operation, err)
            return
        level = logging.INFO if success else logging.WARNING
        logger.log(
            level,
            "%s entry=%s cid=%s success=%s duration=%.1fms details=%s",
            event.operation.value, entry_id, credential_id, success,
            event.duration_ms, details,
        )

    def error(
        self,
        operation: VaultOperation,
        err: BaseException,
        *,
        duration_ms: float = 0.0,
        credential_id: Optional[str] = None,
        entry_id: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> None:
        """Record an ``error_occurred`` event for a failed ``operation``."""
        self.emit(
            VaultOperation.ERROR_OCCURRED,
            success=False,
            duration_ms=duration_ms,
            credential_id=credential_id,
            entry_id=entry_id or getattr(err, "entry_id", None),
            subject=subject,
            original_operation=operation.value,
            error_type=type(err).__name__,
            error_message=str(err),
            retryable=getattr(err, "retryable", True),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def history(self, limit: Optional[int] = None) -> list[TelemetryEvent]:
        events = list(self._history)
        return events[-limit:] if limit else events

    def by_operation(
        self, operation: VaultOperation, limit: Optional[int] = None,
    ) -> list[TelemetryEvent]:
        events = [e for e in self._history if e.operation is operation]
        return events[-limit:] if limit else events

    def by_credential(
        self, credential_id: str, limit: Optional[int] = None,
    ) -> list[TelemetryEvent]:
        events = [e for e in self._history if e.credential_id == credential_id]
        return events[-limit:] if limit else events

    def metrics(self) -> dict[str, Any]:
        """Summarise the retained history.

        Returns:
            Dict with keys: total_operations, successful_operations,
            failed_operations, average_duration_ms, operation_counts,
            recent_errors.
        """
        events = list(self._history)
        successful = sum(1 for e in events if e.success)
        timed = [e.duration_ms for e in events if e.duration_ms > 0]
        counts = Counter(e.operation.value for e in events)
        recent_errors = [
            {
                "operation": e.details.get("original_operation", e.operation.value),
                "error": e.details.get("error_message", "Unknown error"),
                "timestamp": e.timestamp.isoformat(),
            }
            for e in events if not e.success
        ][-_RECENT_ERRORS:]
        return {
            "total_operations": len(events),
            "successful_operations": successful,
            "failed_operations": len(events) - successful,
            "average_duration_ms": round(sum(timed) / len(timed), 1) if timed else 0.0,
            "operation_counts": {op.value: counts.get(op.value, 0) for op in VaultOperation},
            "recent_errors": recent_errors,
        }

    def clear(self) -> None:
        self._history.clear()
        logger.info("Vault telemetry history cleared")

    def export(self) -> dict[str, Any]:
        return {
            "exported_at": self._clock().isoformat(),
            "total_entries": len(self._history),
            "metrics": self.metrics(),
            "history": [e.model_dump(mode="json") for e in self._history],
        }

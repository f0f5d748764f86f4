"""
Reputation bundles — the interface the vault consumes, and a simulated assembler.

The vault treats a bundle as an opaque JSON-ready ``dict``; the only key it
reads is ``epoch``. ``SimulatedReputationAssembler`` produces bundles of the
expected shape with placeholder signal and proof hashes. It is not a
zero-knowledge proof system.
"""
import re
import time
import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Protocol

from .models import ActivityProfile, Clock, CredentialToken, ExportResult, utcnow
from .telemetry import VaultOperation, VaultTelemetry
from .vault.config import VaultConfig
from .vault.crypto import canonical_bytes, serialize_document

logger = logging.getLogger("civic_vault.reputation")

BUNDLE_VERSION = "1.0.0"
PAYLOAD_VALIDITY_DAYS = 182

_EPOCH_PATTERN = re.compile(r"^\d{6}$")
_BUNDLE_ID_ALPHABET = string.ascii_uppercase + string.digits

ReputationBundle = dict[str, Any]


def epoch_for(moment: datetime) -> str:
    """Coarse period identifier: ``YYYYMM``."""
    return f"{moment.year:04d}{moment.month:02d}"


class ReputationAssembler(Protocol):
    async def assemble(
        self,
        credential: CredentialToken,
        profile: ActivityProfile,
        epoch: Optional[str] = None,
    ) -> ReputationBundle:
        ...

    async def export(self, bundle: ReputationBundle) -> ExportResult:
        ...


class SimulatedReputationAssembler:
    """Builds placeholder reputation bundles and writes them to ``export_dir``."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        telemetry: Optional[VaultTelemetry] = None,
        clock: Clock = utcnow,
    ):
        self.config = config or VaultConfig()
        self.export_dir = Path(self.config.export_dir)
        self.telemetry = telemetry or VaultTelemetry(clock=clock)
        self.clock = clock

    @staticmethod
    def _signal(inputs: list[int]) -> str:
        digest = hashlib.sha256(str(sum(inputs)).encode("ascii")).hexdigest()
        return f"0x{digest[:16]}"

    @staticmethod
    def _proof_hash(signal: str, epoch: str, metadata: dict) -> str:
        digest = hashlib.sha256(
            signal.encode("ascii") + epoch.encode("ascii") + canonical_bytes(metadata)
        ).hexdigest()
        return f"sha256:{digest}"

    async def assemble(
        self,
        credential: CredentialToken,
        profile: ActivityProfile,
        epoch: Optional[str] = None,
    ) -> ReputationBundle:
        """Assemble a bundle for ``credential`` from ``profile``.

        Raises:
            ValueError: Profile and credential belong to different subjects.
        """
        if profile.did != credential.subject:
            raise ValueError(
                f"Activity profile {profile.did} does not match credential "
                f"subject {credential.subject}"
            )
        if profile.trust_index != credential.trust_index:
            logger.warning("Trust index mismatch between credential and profile")
        now = self.clock()
        epoch = epoch or epoch_for(now)
        signal = self._signal([
            credential.trust_index,
            credential.streak_days,
            profile.vote_history,
            profile.engagement_level,
            profile.reputation.positive,
        ])
        hashed = {
            "cid": credential.id,
            "tier": credential.tier.value,
            "trustIndex": credential.trust_index,
            "streakDays": credential.streak_days,
            "voteCount": profile.vote_history,
            "engagementScore": profile.engagement_level,
        }
        payload = {
            "signal": signal,
            "epoch": epoch,
            "proofHash": self._proof_hash(signal, epoch, hashed),
            "metadata": {
                **hashed,
                "assembledAt": now.isoformat(),
                "validUntil": (now + timedelta(days=PAYLOAD_VALIDITY_DAYS)).isoformat(),
            },
        }
        bundle: ReputationBundle = {
            "epoch": epoch,
            "payload": payload,
            "credential": credential.model_dump(mode="json", by_alias=True),
            "activityProfile": profile.model_dump(mode="json", by_alias=True),
            "exportMetadata": {
                "bundleId": "RB-" + "".join(
                    secrets.choice(_BUNDLE_ID_ALPHABET) for _ in range(12)
                ),
                "createdAt": now.isoformat(),
                "version": BUNDLE_VERSION,
                "fileSize": 0,
            },
        }
        bundle["exportMetadata"]["fileSize"] = len(serialize_document(bundle))
        logger.info(
            "Reputation bundle assembled: cid=%s epoch=%s signal=%s",
            credential.id, epoch, signal,
        )
        return bundle

    def filename_for(self, bundle: ReputationBundle) -> str:
        credential = bundle["credential"]
        cid_safe = re.sub(r"[:/]", "-", credential["id"])
        stamp = self.clock().strftime("%Y%m%dT%H%M%SZ")
        return f"zkp-rep-{cid_safe}-{credential['tier'].lower()}-{stamp}.json"

    async def export(self, bundle: ReputationBundle) -> ExportResult:
        """Write the bundle as JSON into ``export_dir``."""
        started = time.perf_counter()
        cid = bundle.get("credential", {}).get("id")
        try:
            filename = self.filename_for(bundle)
            data = serialize_document(bundle)
            self.export_dir.mkdir(parents=True, exist_ok=True)
            (self.export_dir / filename).write_bytes(data)
        except (KeyError, OSError, TypeError) as err:
            logger.error("Bundle export failed for cid=%s: %s", cid, err)
            self.telemetry.emit(
                VaultOperation.BUNDLE_EXPORT,
                success=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                credential_id=cid,
                error_message=str(err),
            )
            return ExportResult(success=False, filename="", error=f"Export failed: {err}")

        self.telemetry.emit(
            VaultOperation.BUNDLE_EXPORT,
            duration_ms=(time.perf_counter() - started) * 1000,
            credential_id=cid,
            filename=filename,
            bundle_size=len(data),
        )
        logger.info("Exported reputation bundle: %s (%d bytes)", filename, len(data))
        return ExportResult(success=True, filename=filename, file_size_bytes=len(data))

    @staticmethod
    def verify_payload(payload: dict[str, Any]) -> dict[str, bool]:
        """Structural check of a bundle payload."""
        signal = payload.get("signal", "")
        proof = payload.get("proofHash", "")
        metadata = payload.get("metadata") or {}
        components = {
            "signal_valid": signal.startswith("0x") and len(signal) == 18,
            "epoch_valid": bool(_EPOCH_PATTERN.match(payload.get("epoch", ""))),
            "hash_valid": proof.startswith("sha256:") and len(proof) == 71,
            "metadata_valid": bool(metadata.get("cid") and metadata.get("tier")),
        }
        components["is_valid"] = all(components.values())
        return components

"""
Scan verdict schema.

A verdict tracks four independent sub-statuses for one scanned claim:
signature, freshness, replay and zone. Every sub-status starts in an
explicit CHECKING state. CHECKING means "undetermined" (either still
running or never evaluated because an earlier stage short-circuited),
never "failed".

Verdicts are immutable snapshots. Each resolved stage produces a new
snapshot via ``model_copy(update=...)`` which is what the scanner
collaborator observes incrementally.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from checkin.app.schemas.claim import Claim, FieldError


# ---------------------------------------------------------------------------
# Sub-statuses (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class SignatureStatus(str, Enum):
    CHECKING = "checking"
    VALID = "valid"
    INVALID = "invalid"


class FreshnessStatus(str, Enum):
    CHECKING = "checking"
    VALID = "valid"
    EXPIRED = "expired"
    NOT_STARTED = "not_started"


class ReplayStatus(str, Enum):
    CHECKING = "checking"
    CLEAR = "clear"
    DUPLICATE = "duplicate"


class ZoneStatus(str, Enum):
    CHECKING = "checking"
    VALID = "valid"
    MISMATCH = "mismatch"
    DENIED = "denied"


class RejectionReason(str, Enum):
    """
    Verification-side error taxonomy.

    All reasons are terminal. A rejected claim restarts only through a
    fresh scan; nothing here is retried automatically.
    """

    PAYLOAD_TOO_LARGE = "payload_too_large"
    MALFORMED_PAYLOAD = "malformed_payload"
    SCHEMA_VIOLATION = "schema_violation"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_SIGNATURE = "invalid_signature"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    REPLAY_DETECTED = "replay_detected"
    LOCATION_DENIED = "location_denied"
    ZONE_MISMATCH = "zone_mismatch"


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class ScanVerdict(BaseModel):
    """
    Verification verdict for one scan.

    Acceptance requires every sub-status in its success terminal state.
    """

    scan_id: str = Field(..., description="Identifier of the scan")

    signature: SignatureStatus = SignatureStatus.CHECKING
    freshness: FreshnessStatus = FreshnessStatus.CHECKING
    replay: ReplayStatus = ReplayStatus.CHECKING
    zone: ZoneStatus = ZoneStatus.CHECKING

    rejection: Optional[RejectionReason] = Field(
        None,
        description="First terminal failure, if any",
    )

    field_errors: List[FieldError] = Field(
        default_factory=list,
        description="Every missing or mistyped field (schema failures)",
    )

    observed_zone_hash: Optional[str] = Field(
        None,
        description=(
            "Privacy digest of the device geocell. The raw code is never "
            "retained."
        ),
    )

    @property
    def accepted(self) -> bool:
        return (
            self.signature is SignatureStatus.VALID
            and self.freshness is FreshnessStatus.VALID
            and self.replay is ReplayStatus.CLEAR
            and self.zone is ZoneStatus.VALID
        )

    @property
    def terminal(self) -> bool:
        """True once the verdict can no longer change."""
        return self.accepted or self.rejection is not None

    def reject(self, reason: RejectionReason, **updates) -> "ScanVerdict":
        """Snapshot with a terminal rejection (first reason wins)."""
        if self.rejection is not None:
            return self.model_copy(update=updates)
        return self.model_copy(update={"rejection": reason, **updates})

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Phase results
# ---------------------------------------------------------------------------


class LocalVerdict(BaseModel):
    """
    Result of the synchronous local phase (schema, signature, freshness,
    replay pre-check). Zone matching and nonce commit follow in the
    location phase.
    """

    verdict: ScanVerdict
    claim: Optional[Claim] = None

    @property
    def needs_location(self) -> bool:
        return (
            self.verdict.rejection is None
            and self.verdict.replay is ReplayStatus.CLEAR
        )

    model_config = ConfigDict(frozen=True)


class VerificationOutcome(BaseModel):
    """Final verdict handed to the caller, with the parsed claim."""

    verdict: ScanVerdict
    claim: Optional[Claim] = None

    @property
    def accepted(self) -> bool:
        return self.verdict.accepted

    model_config = ConfigDict(frozen=True)

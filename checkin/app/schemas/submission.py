"""
Submission schemas.

Defines the durable queue item, the transaction envelope handed to the
signing collaborator, and the receipt returned by the ledger relay.

Nothing in this module carries raw zone codes or raw nonces: only their
privacy digests cross the persistence boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from checkin.app.schemas.claim import Claim
from checkin.app.utils.hashing import hash_nonce, hash_zone_code


class QueueItemStatus(str, Enum):
    """
    Lifecycle of a signed, not-yet-finalized submission.

    signed        -> produced, never attempted
    pending       -> attempt in progress (or resumable after a crash)
    needs_resign  -> signature expired; requires an externally supplied
                     fresh transaction
    failed        -> retryable failure awaiting backoff, or capped out
                     (next_attempt_at is None) awaiting manual action
    """

    SIGNED = "signed"
    PENDING = "pending"
    NEEDS_RESIGN = "needs_resign"
    FAILED = "failed"


class ClaimReference(BaseModel):
    """Reference to the claim a submission originated from."""

    event_id: str
    asset: str
    issuer: str
    nonce_digest: str
    zone_hash: Optional[str] = None

    @classmethod
    def from_claim(
        cls,
        claim: Claim,
        zone_hash: Optional[str] = None,
    ) -> "ClaimReference":
        return cls(
            event_id=claim.event_id,
            asset=claim.asset,
            issuer=claim.issuer,
            nonce_digest=hash_nonce(claim.nonce),
            zone_hash=zone_hash
            if zone_hash is not None
            else hash_zone_code(claim.zone[0]),
        )

    model_config = ConfigDict(frozen=True, extra="forbid")


class QueueItem(BaseModel):
    """
    One durable submission queue entry.

    Invariants (enforced by SubmissionQueue):
    - retries never decreases
    - needs_resign is entered only from signed/pending
    - needs_resign is left only through an external resignature
    """

    id: str
    signed_transaction: str = Field(..., min_length=1)
    claim_ref: ClaimReference
    created_at: float
    updated_at: float
    status: QueueItemStatus = QueueItemStatus.SIGNED
    retries: int = Field(0, ge=0)
    next_attempt_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def capped(self) -> bool:
        """Failed with no automatic retry scheduled."""
        return (
            self.status is QueueItemStatus.FAILED
            and self.next_attempt_at is None
        )

    def is_due(self, now: float) -> bool:
        if self.status in (QueueItemStatus.SIGNED, QueueItemStatus.PENDING):
            return True
        if self.status is QueueItemStatus.FAILED:
            return (
                self.next_attempt_at is not None
                and self.next_attempt_at <= now
            )
        return False

    model_config = ConfigDict(frozen=True, extra="forbid")


class TransactionEnvelope(BaseModel):
    """
    Unsigned transaction handed to the signing collaborator.

    The core never sees private key material; it only receives the
    serialized signed transaction back.
    """

    event_id: str
    asset: str
    issuer: str
    nonce_digest: str
    zone_hash: str
    issued_at: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class SubmissionReceipt(BaseModel):
    """Relay acknowledgement of a submitted transaction."""

    transaction_id: str = Field(..., min_length=1)
    finalized: bool = False

    model_config = ConfigDict(frozen=True, extra="ignore")

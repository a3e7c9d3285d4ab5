"""
Check-in service.

End-to-end flow for one scan:

    rate limit -> verification -> transaction envelope -> signer -> queue

Rejected scans never reach the signer. A signer that returns None
(user cancelled in the wallet) leaves the accepted verdict in place and
enqueues nothing. The nonce is already consumed at that point; a new
check-in requires a freshly issued claim.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict

from checkin.app.collaborators import LocationProvider, TransactionSigner
from checkin.app.coordinator.coordinator import VerificationCoordinator
from checkin.app.events import VerificationEventEmitter
from checkin.app.rate_limit import ScanRateLimiter
from checkin.app.schemas.claim import Claim
from checkin.app.schemas.submission import ClaimReference, TransactionEnvelope
from checkin.app.schemas.verdict import ScanVerdict
from checkin.app.submission.queue import SubmissionQueue
from checkin.app.utils.hashing import hash_nonce

logger = logging.getLogger(__name__)


class CheckInResult(BaseModel):
    verdict: ScanVerdict
    queue_item_id: Optional[str] = None
    signing_cancelled: bool = False

    model_config = ConfigDict(frozen=True)


def build_envelope(claim: Claim, verdict: ScanVerdict) -> TransactionEnvelope:
    """Unsigned transaction for an accepted claim."""
    if not verdict.accepted or verdict.observed_zone_hash is None:
        raise ValueError("Only accepted verdicts produce a transaction")

    return TransactionEnvelope(
        event_id=claim.event_id,
        asset=claim.asset,
        issuer=claim.issuer,
        nonce_digest=hash_nonce(claim.nonce),
        zone_hash=verdict.observed_zone_hash,
        issued_at=claim.issued_at,
    )


class CheckInService:
    def __init__(
        self,
        coordinator: VerificationCoordinator,
        queue: SubmissionQueue,
        *,
        signer: Optional[TransactionSigner] = None,
        rate_limiter: Optional[ScanRateLimiter] = None,
    ) -> None:
        self._coordinator = coordinator
        self._queue = queue
        self._signer = signer
        self._rate_limiter = rate_limiter

    def enforce_rate_limit(self, client: str) -> None:
        """Charge one scan attempt to ``client`` or raise ScanRateLimited."""
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(client)

    async def check_in(
        self,
        raw_text: str,
        *,
        client: str = "local",
        location_provider: Optional[LocationProvider] = None,
        emitter: Optional[VerificationEventEmitter] = None,
        scan_id: Optional[str] = None,
        now: Optional[float] = None,
        rate_limited: bool = True,
    ) -> CheckInResult:
        """
        Verify a scanned claim and, when accepted, queue its signed
        transaction.

        Raises ScanRateLimited before any verification work if the
        client is over its scan budget.
        """
        if rate_limited:
            self.enforce_rate_limit(client)

        outcome = await self._coordinator.run_verification(
            raw_text,
            now=now,
            scan_id=scan_id,
            emitter=emitter,
            location_provider=location_provider,
        )
        verdict = outcome.verdict

        if not outcome.accepted or self._signer is None:
            return CheckInResult(verdict=verdict)

        claim = outcome.claim
        envelope = build_envelope(claim, verdict)
        signed_transaction = await self._signer.sign_envelope(envelope)

        if signed_transaction is None:
            logger.info(
                "check_in_signing_cancelled",
                extra={"scan_id": verdict.scan_id},
            )
            return CheckInResult(verdict=verdict, signing_cancelled=True)

        item_id = self._queue.enqueue(
            ClaimReference.from_claim(
                claim,
                zone_hash=verdict.observed_zone_hash,
            ),
            signed_transaction,
        )
        logger.info(
            "check_in_queued",
            extra={"scan_id": verdict.scan_id, "item_id": item_id},
        )
        return CheckInResult(verdict=verdict, queue_item_id=item_id)

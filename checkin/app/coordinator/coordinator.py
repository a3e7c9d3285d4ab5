"""
Scan verification coordinator.

IMPORTANT:
The coordinator enforces ORDER and COMMIT, nothing else. The checks
themselves live in ``checkin.app.checks``.

Execution order:
    1. Schema validation          (hard gate, short-circuits everything)
    2. Signature verification     (hard gate, short-circuits the rest)
    3. Freshness window + replay  } run concurrently once the
       Coarse location acquisition } signature is valid
    4. Zone matching
    5. Nonce commit               (exactly once, only if 1-4 succeeded)

Verification is exposed as two explicit phases:
    - verify_local():    steps 1-3 without location
    - verify_location(): location, step 4 and step 5
``run_verification()`` composes them and overlaps location acquisition
with the freshness checks.

Verification failures are never raised. They are recorded on the verdict
so callers can render partial progress. Sub-statuses that were never
evaluated stay CHECKING.

A nonce, once committed, is never rolled back: the commit runs in a
shielded scope and a cancelled verification whose nonce was committed
is treated as consumed.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple
from uuid import uuid4

import anyio

from checkin.app.checks.claim_schema import parse_claim
from checkin.app.checks.freshness import FreshnessGate
from checkin.app.checks.signature import verify_claim_signature
from checkin.app.checks.zone import acquire_zone, match_zone
from checkin.app.collaborators import IssuerRegistry, LocationProvider
from checkin.app.config import Settings
from checkin.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
    VerificationEventType,
)
from checkin.app.schemas.claim import Claim
from checkin.app.schemas.verdict import (
    FreshnessStatus,
    LocalVerdict,
    RejectionReason,
    ReplayStatus,
    ScanVerdict,
    SignatureStatus,
    VerificationOutcome,
    ZoneStatus,
)
from checkin.app.storage.nonce_ledger import NonceLedger
from checkin.app.utils.hashing import hash_zone_code

logger = logging.getLogger(__name__)

_FRESHNESS_REJECTIONS = {
    FreshnessStatus.EXPIRED: RejectionReason.EXPIRED,
    FreshnessStatus.NOT_STARTED: RejectionReason.NOT_STARTED,
}


class VerificationCoordinator:
    """
    Composes the claim checks into one verdict per scan.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        ledger: NonceLedger,
        issuer_registry: IssuerRegistry,
        location_provider: Optional[LocationProvider] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._gate = FreshnessGate(
            ledger,
            max_age_seconds=settings.claim_max_age_seconds,
        )
        self._issuer_registry = issuer_registry
        self._location_provider = location_provider
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_verification(
        self,
        raw_text: str,
        *,
        now: Optional[float] = None,
        scan_id: Optional[str] = None,
        emitter: Optional[VerificationEventEmitter] = None,
        location_provider: Optional[LocationProvider] = None,
    ) -> VerificationOutcome:
        """
        Run the full verification protocol for one scanned claim.
        """
        emitter = emitter or NullEventEmitter()
        scan_id = scan_id or uuid4().hex
        provider = self._resolve_provider(location_provider)

        verdict = ScanVerdict(scan_id=scan_id)
        await self._emit(emitter, VerificationEventType.SCAN_STARTED, verdict)

        try:
            verdict, claim = await self._check_claim(raw_text, verdict, emitter)

            if claim is None or verdict.rejection is not None:
                return await self._complete(emitter, verdict, claim)

            # ----------------------------------------------------------
            # Freshness and location overlap. A failed window cancels the
            # pending location request; the zone is then never evaluated.
            # ----------------------------------------------------------
            observed_zone: Optional[str] = None
            acquired = False

            async def _acquire() -> None:
                nonlocal observed_zone, acquired
                observed_zone = await self._acquire_zone(provider, claim)
                acquired = True

            async with anyio.create_task_group() as tg:
                tg.start_soon(_acquire)
                verdict = await self._check_freshness(
                    verdict, claim, now, emitter
                )
                if verdict.rejection is not None:
                    tg.cancel_scope.cancel()

            if verdict.rejection is not None or not acquired:
                return await self._complete(emitter, verdict, claim)

            verdict = await self._check_zone_and_commit(
                verdict, claim, observed_zone, emitter
            )
            return await self._complete(emitter, verdict, claim)

        except Exception as exc:
            await emitter.emit(
                VerificationEvent(
                    subject_id=scan_id,
                    event_type=VerificationEventType.SCAN_COMPLETED,
                    verdict=verdict,
                    details={
                        "error": str(exc),
                        "exception_type": type(exc).__name__,
                    },
                )
            )
            raise

    async def verify_local(
        self,
        raw_text: str,
        *,
        now: Optional[float] = None,
        scan_id: Optional[str] = None,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> LocalVerdict:
        """
        Phase one: schema, signature, freshness window and replay
        pre-check. Never touches location and never commits.
        """
        emitter = emitter or NullEventEmitter()
        verdict = ScanVerdict(scan_id=scan_id or uuid4().hex)
        await self._emit(emitter, VerificationEventType.SCAN_STARTED, verdict)

        verdict, claim = await self._check_claim(raw_text, verdict, emitter)
        if claim is not None and verdict.rejection is None:
            verdict = await self._check_freshness(verdict, claim, now, emitter)

        return LocalVerdict(verdict=verdict, claim=claim)

    async def verify_location(
        self,
        local: LocalVerdict,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
        location_provider: Optional[LocationProvider] = None,
    ) -> VerificationOutcome:
        """
        Phase two: acquire the device zone, match it, and commit the
        nonce if everything succeeded.
        """
        emitter = emitter or NullEventEmitter()
        verdict, claim = local.verdict, local.claim

        if not local.needs_location or claim is None:
            return await self._complete(emitter, verdict, claim)

        provider = self._resolve_provider(location_provider)
        observed_zone = await self._acquire_zone(provider, claim)
        verdict = await self._check_zone_and_commit(
            verdict, claim, observed_zone, emitter
        )
        return await self._complete(emitter, verdict, claim)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _check_claim(
        self,
        raw_text: str,
        verdict: ScanVerdict,
        emitter: VerificationEventEmitter,
    ) -> Tuple[ScanVerdict, Optional[Claim]]:
        parsed = parse_claim(
            raw_text,
            max_payload_bytes=self._settings.max_payload_bytes,
        )

        if not parsed.ok:
            verdict = verdict.reject(
                parsed.rejection,
                field_errors=list(parsed.field_errors),
            )
            logger.info(
                "scan_rejected_schema",
                extra={
                    "scan_id": verdict.scan_id,
                    "reason": parsed.rejection.value,
                    "field_errors": len(parsed.field_errors),
                },
            )
            await self._emit(
                emitter,
                VerificationEventType.STAGE_RESOLVED,
                verdict,
                stage="schema",
            )
            return verdict, None

        claim = parsed.claim

        # Point-in-time registry snapshot for this verification
        trusted = self._issuer_registry.trusted_issuers()
        check = verify_claim_signature(claim, trusted)

        if check.valid:
            verdict = verdict.model_copy(
                update={"signature": SignatureStatus.VALID}
            )
        else:
            verdict = verdict.reject(
                check.reason,
                signature=SignatureStatus.INVALID,
            )
            logger.info(
                "scan_rejected_signature",
                extra={
                    "scan_id": verdict.scan_id,
                    "reason": check.reason.value,
                },
            )

        await self._emit(
            emitter,
            VerificationEventType.STAGE_RESOLVED,
            verdict,
            stage="signature",
        )
        return verdict, claim

    async def _check_freshness(
        self,
        verdict: ScanVerdict,
        claim: Claim,
        now: Optional[float],
        emitter: VerificationEventEmitter,
    ) -> ScanVerdict:
        now = self._clock() if now is None else now

        window = self._gate.check_window(claim, now)
        if window is FreshnessStatus.VALID:
            verdict = verdict.model_copy(update={"freshness": window})
        else:
            verdict = verdict.reject(
                _FRESHNESS_REJECTIONS[window],
                freshness=window,
            )

        await self._emit(
            emitter,
            VerificationEventType.STAGE_RESOLVED,
            verdict,
            stage="freshness",
        )

        if verdict.rejection is not None:
            return verdict

        replay = self._gate.check_replay(claim)
        if replay is ReplayStatus.CLEAR:
            verdict = verdict.model_copy(update={"replay": replay})
        else:
            verdict = verdict.reject(
                RejectionReason.REPLAY_DETECTED,
                replay=replay,
            )
            logger.warning(
                "scan_replay_detected",
                extra={"scan_id": verdict.scan_id},
            )

        await self._emit(
            emitter,
            VerificationEventType.STAGE_RESOLVED,
            verdict,
            stage="replay",
        )
        return verdict

    async def _acquire_zone(
        self,
        provider: Optional[LocationProvider],
        claim: Claim,
    ) -> Optional[str]:
        if provider is None:
            return None

        # Observed precision follows the finest allowed cell
        precision = max(len(code) for code in claim.zone)
        return await acquire_zone(
            provider,
            precision=precision,
            timeout_seconds=self._settings.location_timeout_seconds,
        )

    async def _check_zone_and_commit(
        self,
        verdict: ScanVerdict,
        claim: Claim,
        observed_zone: Optional[str],
        emitter: VerificationEventEmitter,
    ) -> ScanVerdict:
        if observed_zone is None:
            verdict = verdict.reject(
                RejectionReason.LOCATION_DENIED,
                zone=ZoneStatus.DENIED,
            )
        else:
            status = match_zone(observed_zone, claim.zone, claim.zone_tolerance)
            updates = {
                "zone": status,
                "observed_zone_hash": hash_zone_code(observed_zone),
            }
            if status is ZoneStatus.VALID:
                verdict = verdict.model_copy(update=updates)
            else:
                verdict = verdict.reject(
                    RejectionReason.ZONE_MISMATCH,
                    **updates,
                )

        await self._emit(
            emitter,
            VerificationEventType.STAGE_RESOLVED,
            verdict,
            stage="zone",
        )

        if not verdict.accepted:
            return verdict

        # ----------------------------------------------------------
        # Nonce commit: exactly once per accepted scan, shielded from
        # cancellation.
        # ----------------------------------------------------------
        with anyio.CancelScope(shield=True):
            committed = await anyio.to_thread.run_sync(
                self._gate.commit, claim
            )

        if not committed:
            # A concurrent scan of the same claim committed first.
            verdict = verdict.reject(
                RejectionReason.REPLAY_DETECTED,
                replay=ReplayStatus.DUPLICATE,
            )
            logger.warning(
                "scan_replay_detected_at_commit",
                extra={"scan_id": verdict.scan_id},
            )
            await self._emit(
                emitter,
                VerificationEventType.STAGE_RESOLVED,
                verdict,
                stage="replay",
            )

        return verdict

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_provider(
        self, override: Optional[LocationProvider]
    ) -> Optional[LocationProvider]:
        return override if override is not None else self._location_provider

    async def _complete(
        self,
        emitter: VerificationEventEmitter,
        verdict: ScanVerdict,
        claim: Optional[Claim],
    ) -> VerificationOutcome:
        logger.info(
            "scan_completed",
            extra={
                "scan_id": verdict.scan_id,
                "accepted": verdict.accepted,
                "reason": verdict.rejection.value if verdict.rejection else None,
            },
        )
        await self._emit(
            emitter,
            VerificationEventType.SCAN_COMPLETED,
            verdict,
            accepted=verdict.accepted,
        )
        return VerificationOutcome(verdict=verdict, claim=claim)

    @staticmethod
    async def _emit(
        emitter: VerificationEventEmitter,
        event_type: VerificationEventType,
        verdict: ScanVerdict,
        **details,
    ) -> None:
        await emitter.emit(
            VerificationEvent(
                subject_id=verdict.scan_id,
                event_type=event_type,
                verdict=verdict,
                details=details or None,
            )
        )

"""
Freshness gate.

Evaluates the claim's time window, an independent maximum-age bound
measured from issuance, and nonce replay against the nonce ledger.

The replay check is a membership test only. Committing the nonce is a
separate, explicit step owned by the verification coordinator, which
performs it once every other local check (notably zone matching) has
succeeded.
"""

from __future__ import annotations

from checkin.app.schemas.claim import Claim
from checkin.app.schemas.verdict import FreshnessStatus, ReplayStatus
from checkin.app.storage.nonce_ledger import NonceLedger


def check_time_window(
    claim: Claim,
    now: float,
    max_age_seconds: float,
) -> FreshnessStatus:
    """
    Classify ``now`` against the claim window.

    The maximum-age bound limits exposure from long-window claims that
    are scanned long after generation.
    """
    if now < claim.issued_at:
        return FreshnessStatus.NOT_STARTED

    if now > claim.expires_at:
        return FreshnessStatus.EXPIRED

    if now - claim.issued_at > max_age_seconds:
        return FreshnessStatus.EXPIRED

    return FreshnessStatus.VALID


class FreshnessGate:
    """
    Time window plus replay gate, backed by an injected nonce ledger.
    """

    def __init__(self, ledger: NonceLedger, *, max_age_seconds: float) -> None:
        self._ledger = ledger
        self._max_age_seconds = max_age_seconds

    def check_window(self, claim: Claim, now: float) -> FreshnessStatus:
        return check_time_window(claim, now, self._max_age_seconds)

    def check_replay(self, claim: Claim) -> ReplayStatus:
        if self._ledger.contains(claim.nonce):
            return ReplayStatus.DUPLICATE
        return ReplayStatus.CLEAR

    def commit(self, claim: Claim) -> bool:
        """
        Commit the claim nonce. False means it was already committed.
        """
        return self._ledger.commit(claim.nonce)

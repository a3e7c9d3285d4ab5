"""
External collaborator interfaces.

The verifier core talks to the outside world only through these
protocols: the trusted-issuer registry, the location source, the
signing wallet and the ledger relay. Persistence is covered by
``checkin.app.storage.store.KeyValueStore``.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from checkin.app.schemas.submission import SubmissionReceipt, TransactionEnvelope


class Coordinates(BaseModel):
    """
    Coarse device position.

    Lives only for the duration of zone acquisition; it is converted to a
    geocell immediately and never stored.
    """

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    accuracy_m: Optional[float] = Field(None, ge=0)

    model_config = ConfigDict(frozen=True)


class LocationUnavailable(RuntimeError):
    """Raised by a location provider when no position can be produced."""


class IssuerRegistry(Protocol):
    def trusted_issuers(self) -> FrozenSet[str]:
        """Point-in-time snapshot of trusted issuer public keys."""
        ...


class LocationProvider(Protocol):
    async def current_position(self, *, coarse: bool) -> Optional[Coordinates]:
        """
        Current position, or None when access is denied or unavailable.

        Callers always request ``coarse=True``.
        """
        ...


class TransactionSigner(Protocol):
    async def sign_envelope(
        self, envelope: TransactionEnvelope
    ) -> Optional[str]:
        """Serialized signed transaction, or None if the user cancelled."""
        ...


class LedgerRelay(Protocol):
    async def submit(self, signed_transaction: str) -> SubmissionReceipt:
        """
        Submit a signed transaction.

        Raises SubmissionTimeout / SubmissionServerError (retryable) or
        SubmissionRejected (terminal).
        """
        ...

    async def await_finalization(self, receipt: SubmissionReceipt) -> None:
        """Return once the transaction is finalized, or raise."""
        ...


# ---------------------------------------------------------------------------
# Simple implementations
# ---------------------------------------------------------------------------


class StaticIssuerRegistry:
    """Registry backed by a fixed key set (configuration-driven)."""

    def __init__(self, keys: Iterable[str]) -> None:
        self._keys = frozenset(keys)

    def trusted_issuers(self) -> FrozenSet[str]:
        return self._keys


class FixedLocationProvider:
    """
    Location source reporting a position supplied by the caller (for
    example coordinates posted alongside a scan). ``None`` means the
    device refused location access.
    """

    def __init__(self, position: Optional[Coordinates]) -> None:
        self._position = position

    async def current_position(self, *, coarse: bool) -> Optional[Coordinates]:
        return self._position

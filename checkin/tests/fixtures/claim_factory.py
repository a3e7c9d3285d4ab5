import base64
import json
from typing import Any, Dict, Optional, Tuple

import anyio

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from checkin.app.collaborators import Coordinates
from checkin.app.schemas.claim import Claim, canonical_message


# ------------------------------------------------------------------
# Reference venue
#
# (57.64911, 10.40744) is the classic geohash test point; it encodes to
# "u4pruydqqvj". Every cell below is derived from it.
# ------------------------------------------------------------------

VENUE = Coordinates(latitude=57.64911, longitude=10.40744)
VENUE_CELL = "u4pru"

# Same 4-character parent as VENUE_CELL, different final character
NEIGHBOR_CELL = "u4prv"

# (42.6, -5.6) encodes to "ezs42", far away from the venue
ELSEWHERE = Coordinates(latitude=42.6, longitude=-5.6)

NOW = 1_700_000_000


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def generate_issuer() -> Tuple[Ed25519PrivateKey, str]:
    """New organizer key pair. Returns (private key, base64 public key)."""
    private_key = Ed25519PrivateKey.generate()
    public_raw = private_key.public_key().public_bytes(
        Encoding.Raw, PublicFormat.Raw
    )
    return private_key, b64(public_raw)


def sign_fields(fields: Dict[str, Any], private_key: Ed25519PrivateKey) -> Dict[str, Any]:
    """Attach a valid signature over the canonical encoding of ``fields``."""
    unsigned = dict(fields)
    unsigned["sig"] = "A" * 88
    claim = Claim.model_validate(unsigned)
    signed = dict(fields)
    signed["sig"] = b64(private_key.sign(canonical_message(claim)))
    return signed


def claim_fields(
    private_key: Ed25519PrivateKey,
    issuer: str,
    *,
    now: int = NOW,
    nonce: str = "nonce-0001-abcdef",
    zone: Any = VENUE_CELL,
    sign: bool = True,
    **overrides: Any,
) -> Dict[str, Any]:
    """
    Wire-format claim dict, signed unless ``sign=False``.

    Overrides are applied before signing, so they are covered by the
    signature.
    """
    fields: Dict[str, Any] = {
        "v": 1,
        "issuer": issuer,
        "event_id": "devcon-2024-day1",
        "asset": "AttendAssetMint1111111111111111111111111",
        "nonce": nonce,
        "issued_at": now - 10,
        "expires_at": now + 600,
        "zone": zone,
    }
    fields.update(overrides)
    if not sign:
        return fields
    return sign_fields(fields, private_key)


def encode(fields: Dict[str, Any]) -> str:
    return json.dumps(fields)


def signed_claim_text(
    private_key: Ed25519PrivateKey,
    issuer: str,
    **kwargs: Any,
) -> str:
    return encode(claim_fields(private_key, issuer, **kwargs))


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = float(NOW)) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SlowLocationProvider:
    """Location source that never answers in time."""

    def __init__(self, delay: float = 30.0) -> None:
        self.delay = delay
        self.calls = 0
        self.cancelled = False

    async def current_position(self, *, coarse: bool) -> Optional[Coordinates]:
        self.calls += 1
        try:
            await anyio.sleep(self.delay)
        except anyio.get_cancelled_exc_class():
            self.cancelled = True
            raise
        return VENUE

"""
Attendance claim schema.

Defines the authoritative structure of a scanned attendance claim: a
signed, time-bounded, zone-scoped attestation issued by an event
organizer. The wire format is the compact JSON object carried by the
event QR code.

The canonical signed message is a FROZEN CONTRACT. Its key order is

    v, issuer, event_id, asset, nonce, issued_at, expires_at, zone

and changing it invalidates every previously issued claim.
"""

from __future__ import annotations

import json
from typing import Annotated, List

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

from checkin.app.geo.geocell import MAX_PRECISION, is_geocell

CLAIM_PROTOCOL_VERSION = 1

# Cheap sanity bounds, enforced before any cryptographic work.
MIN_ISSUER_KEY_LENGTH = 32
MIN_NONCE_LENGTH = 8
MIN_SIGNATURE_LENGTH = 64
MIN_ZONE_CODE_LENGTH = 4


def _checked_geocell(code: str) -> str:
    if not is_geocell(code):
        raise ValueError("Zone code must use the geocell alphabet")
    return code


GeocellCode = Annotated[
    StrictStr,
    Field(
        min_length=MIN_ZONE_CODE_LENGTH,
        max_length=MAX_PRECISION,
    ),
    AfterValidator(_checked_geocell),
]


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    """A single missing or mistyped claim field."""

    field: str = Field(..., description="Wire name of the offending field")
    message: str = Field(..., description="Human-readable problem summary")

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Claim
# ---------------------------------------------------------------------------


class Claim(BaseModel):
    """
    Typed attendance claim.

    Field names are Pythonic; wire names are the aliases. Unknown wire
    keys are dropped: they are not covered by the signature.
    """

    version: StrictInt = Field(..., alias="v")

    issuer: StrictStr = Field(
        ...,
        min_length=MIN_ISSUER_KEY_LENGTH,
        description="Base64 Ed25519 public key of the issuing organizer",
    )

    event_id: StrictStr = Field(..., min_length=1, max_length=64)

    asset: StrictStr = Field(
        ...,
        min_length=1,
        description="Ledger asset the attendance credential is bound to",
    )

    nonce: StrictStr = Field(..., min_length=MIN_NONCE_LENGTH)

    issued_at: StrictInt = Field(..., description="Unix seconds")

    expires_at: StrictInt = Field(..., description="Unix seconds")

    zone: List[GeocellCode] = Field(
        ...,
        min_length=1,
        description="Allowed geocell codes (any entrance of the venue)",
    )

    zone_tolerance: StrictInt = Field(
        0,
        ge=0,
        lt=MAX_PRECISION,
        description="Trailing geocell characters ignored when matching",
    )

    signature: StrictStr = Field(
        ...,
        alias="sig",
        min_length=MIN_SIGNATURE_LENGTH,
        description="Base64 detached Ed25519 signature",
    )

    @field_validator("zone", mode="before")
    @classmethod
    def single_zone_as_list(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("version")
    @classmethod
    def supported_version(cls, v: int) -> int:
        if v != CLAIM_PROTOCOL_VERSION:
            raise ValueError(
                f"Unsupported version: expected {CLAIM_PROTOCOL_VERSION}"
            )
        return v

    @model_validator(mode="after")
    def window_is_ordered(self) -> "Claim":
        if self.expires_at < self.issued_at:
            raise ValueError("expires_at must not precede issued_at")
        return self

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Canonical encoding
# ---------------------------------------------------------------------------


def canonical_payload(claim: Claim) -> dict:
    """
    Ordered mapping covered by the issuer signature.

    Dict insertion order is the serialization order; do not sort.
    """
    return {
        "v": claim.version,
        "issuer": claim.issuer,
        "event_id": claim.event_id,
        "asset": claim.asset,
        "nonce": claim.nonce,
        "issued_at": claim.issued_at,
        "expires_at": claim.expires_at,
        "zone": {
            "cells": list(claim.zone),
            "tolerance": claim.zone_tolerance,
        },
    }


def canonical_message(claim: Claim) -> bytes:
    """Byte-exact message the issuer signed."""
    return json.dumps(
        canonical_payload(claim),
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")

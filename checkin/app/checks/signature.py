"""
Claim signature verification.

Checks the issuer against the trusted-issuer snapshot first (cheap
rejection), then verifies the detached Ed25519 signature over the
canonical claim message.

Exception handling policy:
    Key and signature material comes straight from a scanned QR code.
    Every decode failure (bad base64, wrong key length) and every
    cryptographic rejection maps to INVALID_SIGNATURE. Only the specific
    exceptions these operations raise are caught; logic errors propagate.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import AbstractSet, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from pydantic import BaseModel, ConfigDict

from checkin.app.schemas.claim import Claim, canonical_message
from checkin.app.schemas.verdict import RejectionReason

logger = logging.getLogger(__name__)

ED25519_KEY_BYTES = 32
ED25519_SIGNATURE_BYTES = 64


class SignatureCheck(BaseModel):
    valid: bool
    reason: Optional[RejectionReason] = None

    model_config = ConfigDict(frozen=True)


def _b64decode(value: str) -> bytes:
    """Strict base64 decode accepting both the standard and URL-safe alphabets."""
    normalized = value.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def load_issuer_key(issuer: str) -> Ed25519PublicKey:
    """
    Decode a base64 Ed25519 public key.

    Raises ValueError for anything that is not a 32-byte raw key.
    """
    try:
        raw = _b64decode(issuer)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Issuer key is not valid base64") from exc

    if len(raw) != ED25519_KEY_BYTES:
        raise ValueError(
            f"Issuer key must be {ED25519_KEY_BYTES} bytes, got {len(raw)}"
        )
    return Ed25519PublicKey.from_public_bytes(raw)


def verify_claim_signature(
    claim: Claim,
    trusted_issuers: AbstractSet[str],
) -> SignatureCheck:
    """
    Verify that ``claim`` was signed by a trusted issuer.
    """
    if claim.issuer not in trusted_issuers:
        return SignatureCheck(
            valid=False,
            reason=RejectionReason.INVALID_ISSUER,
        )

    try:
        public_key = load_issuer_key(claim.issuer)
        signature = _b64decode(claim.signature)
        if len(signature) != ED25519_SIGNATURE_BYTES:
            raise ValueError("Signature has the wrong length")
        public_key.verify(signature, canonical_message(claim))
    except InvalidSignature:
        return SignatureCheck(
            valid=False,
            reason=RejectionReason.INVALID_SIGNATURE,
        )
    except (binascii.Error, ValueError) as exc:
        logger.warning(
            "claim_signature_material_undecodable",
            extra={"error": str(exc)},
        )
        return SignatureCheck(
            valid=False,
            reason=RejectionReason.INVALID_SIGNATURE,
        )

    return SignatureCheck(valid=True)

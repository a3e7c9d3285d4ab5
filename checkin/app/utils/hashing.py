"""
Privacy hashing utilities.

One-way digests applied whenever a zone code or a claim nonce crosses a
persistence or transmission boundary. Raw geocell codes and raw nonces
never leave the verification step; the nonce ledger, the submission
queue, events and logs carry these digests only.

IMPORTANT DESIGN RULE:
- This module hashes strings, and strings only.
- Each value kind uses its own domain prefix so a zone digest can never
  collide with a nonce digest of the same text.
"""

import hashlib

_ZONE_DOMAIN = b"checkin.zone.v1:"
_NONCE_DOMAIN = b"checkin.nonce.v1:"


def _digest(domain: bytes, value: str) -> str:
    if not isinstance(value, str):
        raise TypeError(
            f"privacy hashing expects str, got {type(value).__name__}"
        )
    return hashlib.sha256(domain + value.encode("utf-8")).hexdigest()


def hash_zone_code(zone_code: str) -> str:
    """
    Compute the fixed-length (64 hex chars) privacy digest of a zone code.
    """
    return _digest(_ZONE_DOMAIN, zone_code)


def hash_nonce(nonce: str) -> str:
    """Compute the persisted form of a claim nonce."""
    return _digest(_NONCE_DOMAIN, nonce)

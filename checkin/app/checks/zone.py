"""
Zone matching.

Compares the device's current geocell against the claim's allowed
cells. With a tolerance of k characters both codes are truncated to
``len(observed) - k`` characters before comparison, accepting
neighboring cells without ever comparing raw coordinates.

Location is always requested at coarse accuracy and is converted to a
geocell immediately. Denial, unavailability and timeout all resolve to
DENIED, which is distinct from MISMATCH because the remediation differs
(grant access vs. move closer).
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import anyio

from checkin.app.collaborators import LocationProvider, LocationUnavailable
from checkin.app.geo.geocell import InvalidCoordinate, encode_geocell
from checkin.app.schemas.verdict import ZoneStatus

logger = logging.getLogger(__name__)


def match_zone(
    observed: str,
    allowed: Sequence[str],
    tolerance: int = 0,
) -> ZoneStatus:
    """
    Match an observed geocell against the allowed cells.

    ``observed`` is encoded at least as precisely as every allowed code;
    each code is compared at its own length, less ``tolerance`` trailing
    characters.
    """
    for zone in allowed:
        prefix_length = max(1, len(zone) - tolerance)
        if len(observed) < prefix_length:
            continue
        if observed[:prefix_length] == zone[:prefix_length]:
            return ZoneStatus.VALID

    return ZoneStatus.MISMATCH


async def acquire_zone(
    provider: LocationProvider,
    *,
    precision: int,
    timeout_seconds: float,
) -> Optional[str]:
    """
    Request a coarse position and reduce it to a geocell code.

    Returns None on denial, unavailability or timeout. Cancellation of
    the surrounding scope cancels the pending location request.
    """
    position = None

    try:
        with anyio.move_on_after(timeout_seconds) as scope:
            position = await provider.current_position(coarse=True)
    except LocationUnavailable as exc:
        logger.info("location_unavailable", extra={"error": str(exc)})
        return None

    if scope.cancelled_caught:
        logger.info(
            "location_request_timed_out",
            extra={"timeout_seconds": timeout_seconds},
        )
        return None

    if position is None:
        logger.info("location_access_denied")
        return None

    try:
        return encode_geocell(position.latitude, position.longitude, precision)
    except InvalidCoordinate:
        logger.warning("location_provider_returned_invalid_coordinates")
        return None

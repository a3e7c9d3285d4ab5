"""
Geocell encoding.

Maps coordinates to a bounded-precision cell code by interleaved binary
subdivision of the longitude and latitude ranges (longitude first),
packing five bits per base-32 symbol. This is the standard geohash
construction, so a code of length p+1 always refines the code of
length p.

Downstream components only ever see the code, never the coordinates.
"""

from __future__ import annotations

import math

GEOCELL_ALPHABET = "0123456789bcdefghjkmnpqrstuvwxyz"

MIN_PRECISION = 1
MAX_PRECISION = 12

_BITS_PER_SYMBOL = 5


class InvalidCoordinate(ValueError):
    """Raised for coordinates or precisions outside the valid ranges."""


def encode_geocell(
    latitude: float,
    longitude: float,
    precision: int = 5,
) -> str:
    """
    Encode coordinates to a geocell code of ``precision`` characters.

    Approximate cell sizes: 4 -> ~39km x 20km, 5 -> ~5km x 5km,
    6 -> ~1.2km x 0.6km, 7 -> ~150m x 150m.
    """
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise InvalidCoordinate("Precision must be an integer")
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise InvalidCoordinate(
            f"Precision must be between {MIN_PRECISION} and {MAX_PRECISION}"
        )
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise InvalidCoordinate("Coordinates must be finite numbers")
    if not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinate("Latitude must be between -90 and 90")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidCoordinate("Longitude must be between -180 and 180")

    lat_min, lat_max = -90.0, 90.0
    lon_min, lon_max = -180.0, 180.0

    symbols = []
    bit = 0
    value = 0
    even = True

    while len(symbols) < precision:
        if even:
            mid = (lon_min + lon_max) / 2
            if longitude >= mid:
                value = (value << 1) | 1
                lon_min = mid
            else:
                value = value << 1
                lon_max = mid
        else:
            mid = (lat_min + lat_max) / 2
            if latitude >= mid:
                value = (value << 1) | 1
                lat_min = mid
            else:
                value = value << 1
                lat_max = mid

        even = not even
        bit += 1

        if bit == _BITS_PER_SYMBOL:
            symbols.append(GEOCELL_ALPHABET[value])
            bit = 0
            value = 0

    return "".join(symbols)


def is_geocell(code: str) -> bool:
    """True when ``code`` is a well-formed geocell of supported length."""
    return (
        isinstance(code, str)
        and MIN_PRECISION <= len(code) <= MAX_PRECISION
        and all(ch in GEOCELL_ALPHABET for ch in code)
    )

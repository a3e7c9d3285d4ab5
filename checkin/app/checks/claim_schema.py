"""
Claim schema validation.

Turns raw scanned text into a typed Claim or a complete list of field
errors. Validation is deterministic and performs no cryptographic work;
the size bound is checked before anything is parsed.
"""

from __future__ import annotations

import json
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from checkin.app.schemas.claim import Claim, FieldError
from checkin.app.schemas.verdict import RejectionReason

DEFAULT_MAX_PAYLOAD_BYTES = 2048


class ClaimParseResult(BaseModel):
    """
    Outcome of schema validation.

    Exactly one of ``claim`` or ``rejection`` is set.
    """

    claim: Optional[Claim] = None
    rejection: Optional[RejectionReason] = None
    field_errors: List[FieldError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.claim is not None

    model_config = ConfigDict(frozen=True)


def _field_errors(exc: ValidationError) -> List[FieldError]:
    """
    Flatten pydantic errors into wire-named field errors.

    Every failing field is reported; validation never stops at the first.
    """
    errors: List[FieldError] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "claim"
        if err.get("type") == "missing":
            message = "Missing required field"
        else:
            message = err.get("msg", "Invalid value")
        errors.append(FieldError(field=loc, message=message))
    return errors


def parse_claim(
    raw_text: str,
    *,
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
) -> ClaimParseResult:
    """
    Parse and structurally validate a scanned claim.
    """
    try:
        encoded = raw_text.encode("utf-8")
    except UnicodeEncodeError:
        # Unpaired surrogates cannot have come from a scanned code
        return ClaimParseResult(rejection=RejectionReason.MALFORMED_PAYLOAD)

    if len(encoded) > max_payload_bytes:
        return ClaimParseResult(rejection=RejectionReason.PAYLOAD_TOO_LARGE)

    try:
        data = json.loads(raw_text)
    except ValueError:
        return ClaimParseResult(rejection=RejectionReason.MALFORMED_PAYLOAD)

    if not isinstance(data, dict):
        return ClaimParseResult(
            rejection=RejectionReason.MALFORMED_PAYLOAD,
            field_errors=[
                FieldError(field="claim", message="Payload must be an object")
            ],
        )

    try:
        json.dumps(data, ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError:
        # JSON escapes such as "\ud800" decode to unpaired surrogates
        return ClaimParseResult(rejection=RejectionReason.MALFORMED_PAYLOAD)

    try:
        claim = Claim.model_validate(data)
    except ValidationError as exc:
        return ClaimParseResult(
            rejection=RejectionReason.SCHEMA_VIOLATION,
            field_errors=_field_errors(exc),
        )

    return ClaimParseResult(claim=claim)

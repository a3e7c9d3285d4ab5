from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict

from checkin.app.schemas.verdict import ScanVerdict


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class VerificationEventType(str, Enum):
    """
    Progression events emitted during scan verification and submission.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve observational semantics.
    """

    # ------------------------------------------------------------------
    # Scan verification
    # ------------------------------------------------------------------
    SCAN_STARTED = "scan_started"
    STAGE_RESOLVED = "stage_resolved"
    SCAN_COMPLETED = "scan_completed"

    # ------------------------------------------------------------------
    # Submission lifecycle
    # ------------------------------------------------------------------
    SUBMISSION_ATTEMPTED = "submission_attempted"
    SUBMISSION_FINALIZED = "submission_finalized"
    SUBMISSION_FAILED = "submission_failed"
    SUBMISSION_NEEDS_RESIGN = "submission_needs_resign"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class VerificationEvent(BaseModel):
    """
    An immutable observation of a state transition.

    Scan events carry the verdict snapshot at the time of emission so a
    scanner collaborator can render partial progress. Submission events
    carry the queue item id in ``subject_id``.
    """

    event_id: UUID = Field(default_factory=uuid4)
    subject_id: str = Field(..., description="Scan id or queue item id")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: VerificationEventType

    verdict: Optional[ScanVerdict] = None

    # Optional contextual metadata (stage, retries, error class, etc.)
    details: Optional[Dict[str, Any]] = None

    def to_sse_payload(self) -> str:
        return f"event: {self.event_type.value}\ndata: {self.model_dump_json()}\n\n"

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

from __future__ import annotations

from typing import Protocol

from checkin.app.events.models import VerificationEvent


class VerificationEventEmitter(Protocol):
    """
    Sink for check-in progress.

    Two producers write here: the coordinator, one STAGE_RESOLVED per
    verification stage between SCAN_STARTED and SCAN_COMPLETED, and the
    submission worker, one SUBMISSION_* event per delivery attempt.

    ``emit`` is awaited inline by both, so it must return promptly and
    must not raise; a slow or broken listener cannot hold back a verdict
    or a queue transition.
    """

    async def emit(self, event: VerificationEvent) -> None:
        ...


class NullEventEmitter:
    """
    Discards every event.

    Default for plain ``POST /scans`` requests and for the submission
    worker, where no SSE client is attached.
    """

    async def emit(self, event: VerificationEvent) -> None:
        return

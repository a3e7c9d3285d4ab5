"""
Submission worker.

Drains the durable submission queue against the ledger relay. One worker
per queue; items are processed one at a time and never concurrently
with themselves.

Per item:
    1. mark pending (persisted before any network call)
    2. relay.submit
    3. relay.await_finalization
    4. remove from the queue

Failure routing:
    SubmissionTimeout / SubmissionServerError
        -> failed, retries + 1, next_attempt_at = now + backoff
        -> failed, unscheduled once retries reach max_submission_attempts
    SubmissionRejected(signature_expired=True)
        -> needs_resign (the worker never re-signs)
    SubmissionRejected
        -> failed, unscheduled
    anything else
        -> logged with its traceback, then routed like a timeout

A crash between steps leaves the item pending, which is due again on
the next drain. Relays are expected to deduplicate resubmissions of the
same signed transaction.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Set

import anyio

from checkin.app.collaborators import LedgerRelay
from checkin.app.config import Settings
from checkin.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
    VerificationEventType,
)
from checkin.app.schemas.submission import QueueItem, QueueItemStatus
from checkin.app.submission.errors import (
    InvalidQueueTransition,
    QueueItemNotFound,
    SubmissionRejected,
    SubmissionServerError,
    SubmissionTimeout,
)
from checkin.app.submission.queue import SubmissionQueue

logger = logging.getLogger(__name__)


def backoff_delay(retries: int, base: float, maximum: float) -> float:
    """Delay before the next attempt after ``retries`` failures."""
    if retries < 1:
        return 0.0
    return min(base * 2 ** (retries - 1), maximum)


class SubmissionWorker:
    """
    Background delivery of queued submissions with bounded retries.
    """

    def __init__(
        self,
        queue: SubmissionQueue,
        relay: LedgerRelay,
        settings: Settings,
        *,
        emitter: Optional[VerificationEventEmitter] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._relay = relay
        self._settings = settings
        self._emitter = emitter or NullEventEmitter()
        self._clock = clock
        self._in_flight: Set[str] = set()

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: anyio.Event) -> None:
        """
        Drain until ``stop_event`` is set, sleeping between passes.
        """
        logger.info(
            "submission_worker_started",
            extra={
                "poll_interval_seconds": self._settings.worker_poll_interval_seconds,
            },
        )

        while not stop_event.is_set():
            try:
                await self.drain_once()
                self._prune()
            except Exception:
                logger.exception("submission_drain_failed")

            with anyio.move_on_after(
                self._settings.worker_poll_interval_seconds
            ):
                await stop_event.wait()

        logger.info("submission_worker_stopped")

    async def drain_once(self) -> List[str]:
        """
        Attempt every item due now. Returns the ids that were attempted.
        """
        now = self._clock()
        attempted = []

        for item in self._queue.due(now):
            if await self.process(item.id):
                attempted.append(item.id)

        return attempted

    # ------------------------------------------------------------------
    # Single item
    # ------------------------------------------------------------------

    async def process(self, item_id: str) -> bool:
        """
        Run one delivery attempt. Returns False if the item was skipped
        (already in flight, gone, or no longer eligible).
        """
        if item_id in self._in_flight:
            return False

        self._in_flight.add(item_id)
        try:
            try:
                item = self._queue.update(
                    item_id,
                    status=QueueItemStatus.PENDING,
                )
            except (QueueItemNotFound, InvalidQueueTransition) as exc:
                logger.info(
                    "submission_skipped",
                    extra={"item_id": item_id, "reason": type(exc).__name__},
                )
                return False

            await self._attempt(item)
            return True
        finally:
            self._in_flight.discard(item_id)

    async def _attempt(self, item: QueueItem) -> None:
        await self._emit(
            VerificationEventType.SUBMISSION_ATTEMPTED,
            item,
            retries=item.retries,
        )

        try:
            receipt = await self._relay.submit(item.signed_transaction)
            await self._relay.await_finalization(receipt)

        except SubmissionRejected as exc:
            if exc.signature_expired:
                self._mark_needs_resign(item, exc)
                await self._emit(
                    VerificationEventType.SUBMISSION_NEEDS_RESIGN,
                    item,
                    error=str(exc),
                )
            else:
                updated = self._queue.update(
                    item.id,
                    status=QueueItemStatus.FAILED,
                    next_attempt_at=None,
                    last_error=str(exc),
                )
                logger.warning(
                    "submission_rejected",
                    extra={"item_id": item.id, "code": exc.code},
                )
                await self._emit(
                    VerificationEventType.SUBMISSION_FAILED,
                    updated,
                    error=str(exc),
                    retryable=False,
                )
            return

        except (SubmissionTimeout, SubmissionServerError) as exc:
            updated = self._schedule_retry(item, exc)
            await self._emit(
                VerificationEventType.SUBMISSION_FAILED,
                updated,
                error=str(exc),
                retryable=not updated.capped,
                retries=updated.retries,
            )
            return

        except Exception as exc:
            logger.exception(
                "submission_attempt_crashed",
                extra={"item_id": item.id, "error_type": type(exc).__name__},
            )
            updated = self._schedule_retry(item, exc)
            await self._emit(
                VerificationEventType.SUBMISSION_FAILED,
                updated,
                error=str(exc),
                retryable=not updated.capped,
                retries=updated.retries,
            )
            return

        self._queue.remove(item.id)
        logger.info(
            "submission_finalized",
            extra={
                "item_id": item.id,
                "transaction_id": receipt.transaction_id,
                "retries": item.retries,
            },
        )
        await self._emit(
            VerificationEventType.SUBMISSION_FINALIZED,
            item,
            transaction_id=receipt.transaction_id,
            retries=item.retries,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _schedule_retry(self, item: QueueItem, exc: Exception) -> QueueItem:
        retries = item.retries + 1
        settings = self._settings

        if retries >= settings.max_submission_attempts:
            next_attempt_at = None
        else:
            next_attempt_at = self._clock() + backoff_delay(
                retries,
                settings.retry_base_delay_seconds,
                settings.retry_max_delay_seconds,
            )

        updated = self._queue.update(
            item.id,
            status=QueueItemStatus.FAILED,
            retries=retries,
            next_attempt_at=next_attempt_at,
            last_error=str(exc),
        )

        logger.warning(
            "submission_attempt_failed",
            extra={
                "item_id": item.id,
                "retries": retries,
                "error_type": type(exc).__name__,
                "capped": updated.capped,
            },
        )
        return updated

    def _mark_needs_resign(self, item: QueueItem, exc: SubmissionRejected) -> None:
        self._queue.update(
            item.id,
            status=QueueItemStatus.NEEDS_RESIGN,
            next_attempt_at=None,
            last_error=str(exc),
        )
        logger.warning(
            "submission_needs_resign",
            extra={"item_id": item.id, "code": exc.code},
        )

    def _prune(self) -> None:
        retention = self._settings.failed_retention_seconds
        if retention is None:
            return
        self._queue.prune_failed(self._clock(), retention)

    async def _emit(
        self,
        event_type: VerificationEventType,
        item: QueueItem,
        **details,
    ) -> None:
        await self._emitter.emit(
            VerificationEvent(
                subject_id=item.id,
                event_type=event_type,
                details={"event_id": item.claim_ref.event_id, **details},
            )
        )

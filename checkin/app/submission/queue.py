"""
Durable submission queue.

Holds signed transactions that have not been finalized yet. The whole
queue is a single JSON document in the key/value store; every mutation
goes through ``read_modify_write`` and is durable before the call
returns, so items survive process restarts.

Status transitions:

    signed ---------> pending ---------> (removed on finalization)
       |                 |
       |                 +--> failed (scheduled) --> pending
       |                 |       |
       |                 |       +--> failed (capped) --manual retry--> pending
       |                 |
       +-----------------+--> needs_resign --resign--> pending

needs_resign is entered only from signed or pending and left only
through ``resign()``. ``retries`` never decreases.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from checkin.app.schemas.submission import (
    ClaimReference,
    QueueItem,
    QueueItemStatus,
)
from checkin.app.storage.store import KeyValueStore
from checkin.app.submission.errors import (
    InvalidQueueTransition,
    QueueItemNotFound,
)

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = "submission_queue"

_MUTABLE_FIELDS = frozenset(
    {"status", "retries", "next_attempt_at", "last_error"}
)

_ALLOWED_TRANSITIONS = {
    QueueItemStatus.SIGNED: {
        QueueItemStatus.SIGNED,
        QueueItemStatus.PENDING,
        QueueItemStatus.FAILED,
        QueueItemStatus.NEEDS_RESIGN,
    },
    QueueItemStatus.PENDING: {
        QueueItemStatus.PENDING,
        QueueItemStatus.FAILED,
        QueueItemStatus.NEEDS_RESIGN,
    },
    QueueItemStatus.FAILED: {
        QueueItemStatus.FAILED,
        QueueItemStatus.PENDING,
    },
    # Left only through resign()
    QueueItemStatus.NEEDS_RESIGN: {
        QueueItemStatus.NEEDS_RESIGN,
    },
}


def _apply_update(item: QueueItem, fields: Dict[str, Any], now: float) -> QueueItem:
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Queue item fields are not updatable: {sorted(unknown)}")

    status = QueueItemStatus(fields.get("status", item.status))
    if status not in _ALLOWED_TRANSITIONS[item.status]:
        raise InvalidQueueTransition(
            f"Cannot move item {item.id} from {item.status.value} "
            f"to {status.value}"
        )

    retries = fields.get("retries", item.retries)
    if retries < item.retries:
        raise InvalidQueueTransition(
            f"Retries of item {item.id} cannot decrease"
        )

    return QueueItem.model_validate(
        {
            **item.model_dump(),
            **fields,
            "status": status,
            "updated_at": now,
        }
    )


class SubmissionQueue:
    """
    Persistent, ordered queue of signed submissions.

    Items are listed in creation order. Ids are opaque.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = DEFAULT_QUEUE_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._key = key
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self) -> List[QueueItem]:
        return [QueueItem.model_validate(raw) for raw in self._load()]

    def get(self, item_id: str) -> QueueItem:
        for item in self.list():
            if item.id == item_id:
                return item
        raise QueueItemNotFound(item_id)

    def due(self, now: float) -> List[QueueItem]:
        """Items the worker should attempt at ``now``."""
        return [item for item in self.list() if item.is_due(now)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        claim_ref: ClaimReference,
        signed_transaction: str,
    ) -> str:
        """Persist a freshly signed transaction. Returns the item id."""
        now = self._clock()
        item = QueueItem(
            id=uuid4().hex,
            signed_transaction=signed_transaction,
            claim_ref=claim_ref,
            created_at=now,
            updated_at=now,
        )

        def mutate(items):
            return items + [item.model_dump(mode="json")], item.id

        item_id = self._mutate(mutate)
        logger.info(
            "submission_enqueued",
            extra={"item_id": item_id, "event_id": claim_ref.event_id},
        )
        return item_id

    def update(self, item_id: str, **fields: Any) -> QueueItem:
        """
        Update status bookkeeping of one item.

        Only status, retries, next_attempt_at and last_error may change.
        """
        now = self._clock()
        return self._replace(
            item_id, lambda item: _apply_update(item, fields, now)
        )

    def remove(self, item_id: str) -> QueueItem:
        """Drop an item (finalized submissions)."""

        def mutate(items):
            for index, raw in enumerate(items):
                if raw["id"] == item_id:
                    removed = items[index]
                    return items[:index] + items[index + 1:], removed
            raise QueueItemNotFound(item_id)

        removed = QueueItem.model_validate(self._mutate(mutate))
        logger.info("submission_removed", extra={"item_id": item_id})
        return removed

    def resign(self, item_id: str, signed_transaction: str) -> QueueItem:
        """
        Replace the transaction of a needs_resign item with a freshly
        signed one and make it eligible for submission again.
        """
        if not signed_transaction:
            raise ValueError("signed_transaction must not be empty")

        now = self._clock()

        def transform(item: QueueItem) -> QueueItem:
            if item.status is not QueueItemStatus.NEEDS_RESIGN:
                raise InvalidQueueTransition(
                    f"Item {item.id} is {item.status.value}, not needs_resign"
                )
            return item.model_copy(
                update={
                    "signed_transaction": signed_transaction,
                    "status": QueueItemStatus.PENDING,
                    "next_attempt_at": None,
                    "last_error": None,
                    "updated_at": now,
                }
            )

        updated = self._replace(item_id, transform)
        logger.info("submission_resigned", extra={"item_id": item_id})
        return updated

    def retry(self, item_id: str) -> QueueItem:
        """
        Manual retry of a failed item, capped or not. The retry counter
        is kept; the item becomes due immediately.
        """
        now = self._clock()

        def transform(item: QueueItem) -> QueueItem:
            if item.status is not QueueItemStatus.FAILED:
                raise InvalidQueueTransition(
                    f"Only failed items can be retried, {item.id} is "
                    f"{item.status.value}"
                )
            return _apply_update(
                item,
                {"status": QueueItemStatus.PENDING, "next_attempt_at": None},
                now,
            )

        updated = self._replace(item_id, transform)
        logger.info(
            "submission_manual_retry",
            extra={"item_id": item_id, "retries": updated.retries},
        )
        return updated

    def retry_all_failed(self) -> List[str]:
        """Manual retry of every failed item. Returns the affected ids."""
        now = self._clock()

        def mutate(items):
            retried = []
            result = []
            for raw in items:
                item = QueueItem.model_validate(raw)
                if item.status is QueueItemStatus.FAILED:
                    item = _apply_update(
                        item,
                        {
                            "status": QueueItemStatus.PENDING,
                            "next_attempt_at": None,
                        },
                        now,
                    )
                    retried.append(item.id)
                result.append(item.model_dump(mode="json"))
            return result, retried

        retried = self._mutate(mutate)
        if retried:
            logger.info(
                "submission_manual_retry_all",
                extra={"count": len(retried)},
            )
        return retried

    def discard(self, item_id: str) -> QueueItem:
        """
        Give up on a failed or needs_resign item.

        Items that are still being worked on cannot be discarded.
        """
        item = self.get(item_id)
        if item.status not in (
            QueueItemStatus.FAILED,
            QueueItemStatus.NEEDS_RESIGN,
        ):
            raise InvalidQueueTransition(
                f"Item {item_id} is {item.status.value} and cannot be discarded"
            )
        return self.remove(item_id)

    def prune_failed(self, now: float, retention_seconds: float) -> List[str]:
        """
        Drop capped-out failed items untouched for ``retention_seconds``.
        """
        cutoff = now - retention_seconds

        def mutate(items):
            kept, pruned = [], []
            for raw in items:
                item = QueueItem.model_validate(raw)
                if item.capped and item.updated_at <= cutoff:
                    pruned.append(item.id)
                else:
                    kept.append(raw)
            return kept, pruned

        pruned = self._mutate(mutate)
        if pruned:
            logger.info(
                "submission_failed_pruned",
                extra={"count": len(pruned)},
            )
        return pruned

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    def _load(self) -> List[Dict[str, Any]]:
        return list(self._store.get(self._key) or [])

    def _mutate(self, mutate: Callable[[List[Dict[str, Any]]], Tuple[Any, Any]]):
        def apply(current: Optional[List[Dict[str, Any]]]):
            return mutate(list(current or []))

        return self._store.read_modify_write(self._key, apply)

    def _replace(
        self,
        item_id: str,
        transform: Callable[[QueueItem], QueueItem],
    ) -> QueueItem:
        def mutate(items):
            for index, raw in enumerate(items):
                if raw["id"] == item_id:
                    updated = transform(QueueItem.model_validate(raw))
                    items[index] = updated.model_dump(mode="json")
                    return items, updated
            raise QueueItemNotFound(item_id)

        return self._mutate(mutate)

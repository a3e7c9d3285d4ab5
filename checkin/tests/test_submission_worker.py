"""
Submission worker behavior.

The relay is a controlled AsyncMock double; the queue is real and
backed by an in-memory store. Time is driven by a fake clock so backoff
schedules are exact.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import anyio
import pytest

from checkin.app.config import Settings
from checkin.app.events import VerificationEventType
from checkin.app.schemas.submission import (
    ClaimReference,
    QueueItemStatus,
    SubmissionReceipt,
)
from checkin.app.storage.store import InMemoryStore
from checkin.app.submission.errors import (
    SubmissionRejected,
    SubmissionServerError,
    SubmissionTimeout,
)
from checkin.app.submission.queue import SubmissionQueue
from checkin.app.submission.worker import SubmissionWorker, backoff_delay

from checkin.tests.fixtures.claim_factory import FakeClock

pytestmark = pytest.mark.anyio

RECEIPT = SubmissionReceipt(transaction_id="tx-abc", finalized=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingEmitter:
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type is event_type]


def _ref():
    return ClaimReference(
        event_id="devcon-2024-day1",
        asset="AttendAssetMint1111111111111111111111111",
        issuer="issuer-key",
        nonce_digest="0" * 64,
        zone_hash="1" * 64,
    )


def _relay(*submit_outcomes):
    relay = AsyncMock()
    relay.submit.side_effect = list(submit_outcomes)
    relay.await_finalization.return_value = None
    return relay


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return SubmissionQueue(InMemoryStore(), clock=clock)


@pytest.fixture
def emitter():
    return RecordingEmitter()


def _worker(queue, relay, clock, emitter=None, **settings):
    settings.setdefault("retry_base_delay_seconds", 1)
    settings.setdefault("retry_max_delay_seconds", 300)
    return SubmissionWorker(
        queue,
        relay,
        Settings(**settings),
        emitter=emitter,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "retries, expected",
    [(0, 0), (1, 1), (2, 2), (3, 4), (4, 8), (9, 256), (10, 300), (30, 300)],
)
def test_backoff_doubles_up_to_ceiling(retries, expected):
    assert backoff_delay(retries, base=1, maximum=300) == expected


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

async def test_finalized_submission_is_removed(queue, clock, emitter):
    relay = _relay(RECEIPT)
    item_id = queue.enqueue(_ref(), "signed-tx")

    attempted = await _worker(queue, relay, clock, emitter).drain_once()

    assert attempted == [item_id]
    assert queue.list() == []
    relay.submit.assert_awaited_once_with("signed-tx")
    relay.await_finalization.assert_awaited_once_with(RECEIPT)
    assert [e.event_type for e in emitter.events] == [
        VerificationEventType.SUBMISSION_ATTEMPTED,
        VerificationEventType.SUBMISSION_FINALIZED,
    ]


async def test_item_is_pending_while_submission_is_in_flight(queue, clock):
    item_id = queue.enqueue(_ref(), "signed-tx")
    seen = []

    async def submit(tx):
        seen.append(queue.get(item_id).status)
        return RECEIPT

    relay = AsyncMock()
    relay.submit.side_effect = submit

    await _worker(queue, relay, clock).drain_once()

    assert seen == [QueueItemStatus.PENDING]


async def test_three_failures_then_success(queue, clock, emitter):
    relay = _relay(
        SubmissionTimeout("offline"),
        SubmissionServerError("503", status_code=503),
        SubmissionTimeout("offline"),
        RECEIPT,
    )
    worker = _worker(queue, relay, clock, emitter)
    item_id = queue.enqueue(_ref(), "signed-tx")
    start = clock.now

    await worker.drain_once()
    item = queue.get(item_id)
    assert (item.status, item.retries) == (QueueItemStatus.FAILED, 1)
    assert item.next_attempt_at == start + 1

    # Not due yet: nothing happens
    assert await worker.drain_once() == []

    clock.advance(1)
    await worker.drain_once()
    item = queue.get(item_id)
    assert item.retries == 2
    assert item.next_attempt_at == clock.now + 2

    clock.advance(2)
    await worker.drain_once()
    item = queue.get(item_id)
    assert item.retries == 3
    assert item.next_attempt_at == clock.now + 4
    assert item.last_error == "offline"

    clock.advance(4)
    await worker.drain_once()

    assert queue.list() == []
    assert relay.submit.await_count == 4
    finalized = emitter.of_type(VerificationEventType.SUBMISSION_FINALIZED)
    assert finalized[0].details["retries"] == 3


async def test_finalization_failure_is_retryable(queue, clock):
    relay = AsyncMock()
    relay.submit.return_value = SubmissionReceipt(transaction_id="tx-1")
    relay.await_finalization.side_effect = SubmissionTimeout("not final")
    item_id = queue.enqueue(_ref(), "signed-tx")

    await _worker(queue, relay, clock).drain_once()

    item = queue.get(item_id)
    assert item.status is QueueItemStatus.FAILED
    assert item.retries == 1
    assert item.next_attempt_at is not None


async def test_retries_are_capped(queue, clock, emitter):
    relay = _relay(*[SubmissionTimeout("offline")] * 3)
    worker = _worker(queue, relay, clock, emitter, max_submission_attempts=3)
    item_id = queue.enqueue(_ref(), "signed-tx")

    for _ in range(3):
        await worker.drain_once()
        clock.advance(1_000)

    item = queue.get(item_id)
    assert item.capped
    assert item.retries == 3
    assert item.next_attempt_at is None

    # Stays put no matter how much time passes
    clock.advance(1_000_000)
    assert await worker.drain_once() == []
    assert relay.submit.await_count == 3

    failures = emitter.of_type(VerificationEventType.SUBMISSION_FAILED)
    assert [e.details["retryable"] for e in failures] == [True, True, False]


async def test_manual_retry_of_capped_item_is_attempted_again(queue, clock):
    relay = _relay(SubmissionTimeout("offline"), RECEIPT)
    worker = _worker(queue, relay, clock, max_submission_attempts=1)
    item_id = queue.enqueue(_ref(), "signed-tx")

    await worker.drain_once()
    assert queue.get(item_id).capped

    queue.retry(item_id)
    await worker.drain_once()

    assert queue.list() == []


async def test_expired_signature_moves_item_to_needs_resign(queue, clock, emitter):
    relay = _relay(
        SubmissionRejected(
            "blockhash expired",
            signature_expired=True,
            code="signature_expired",
        ),
        RECEIPT,
    )
    worker = _worker(queue, relay, clock, emitter)
    item_id = queue.enqueue(_ref(), "stale-tx")

    await worker.drain_once()

    item = queue.get(item_id)
    assert item.status is QueueItemStatus.NEEDS_RESIGN
    assert item.retries == 0
    assert emitter.of_type(VerificationEventType.SUBMISSION_NEEDS_RESIGN)

    # The worker never re-signs on its own
    clock.advance(10_000)
    assert await worker.drain_once() == []

    queue.resign(item_id, "fresh-tx")
    await worker.drain_once()

    assert queue.list() == []
    assert relay.submit.await_args_list[-1].args == ("fresh-tx",)


async def test_other_rejections_fail_without_schedule(queue, clock):
    relay = _relay(SubmissionRejected("insufficient funds", code="funds"))
    worker = _worker(queue, relay, clock)
    item_id = queue.enqueue(_ref(), "signed-tx")

    await worker.drain_once()

    item = queue.get(item_id)
    assert item.status is QueueItemStatus.FAILED
    assert item.capped
    assert item.retries == 0
    assert "insufficient funds" in item.last_error


async def test_pending_item_from_a_crash_is_resumed(queue, clock):
    relay = _relay(RECEIPT)
    item_id = queue.enqueue(_ref(), "signed-tx")
    queue.update(item_id, status=QueueItemStatus.PENDING)

    attempted = await _worker(queue, relay, clock).drain_once()

    assert attempted == [item_id]
    assert queue.list() == []


async def test_unexpected_errors_are_recorded_and_rescheduled(queue, clock, emitter):
    relay = _relay(ValueError("Expecting value: line 1 column 1"), RECEIPT)
    worker = _worker(queue, relay, clock, emitter)
    item_id = queue.enqueue(_ref(), "signed-tx")

    attempted = await worker.drain_once()

    item = queue.get(item_id)
    assert attempted == [item_id]
    assert item.status is QueueItemStatus.FAILED
    assert item.retries == 1
    assert item.next_attempt_at == clock.now + 1
    assert "Expecting value" in item.last_error
    assert worker.in_flight == set()
    assert emitter.of_type(VerificationEventType.SUBMISSION_FAILED)

    clock.advance(1)
    await worker.drain_once()

    assert queue.list() == []


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

async def test_item_is_never_processed_concurrently(queue, clock):
    release = anyio.Event()

    async def submit(tx):
        await release.wait()
        return RECEIPT

    relay = AsyncMock()
    relay.submit.side_effect = submit
    worker = _worker(queue, relay, clock)
    item_id = queue.enqueue(_ref(), "signed-tx")
    results = []

    async def process():
        results.append(await worker.process(item_id))

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(process)
            while item_id not in worker.in_flight:
                await anyio.sleep(0)

            assert await worker.process(item_id) is False
            release.set()

    assert results == [True]
    assert relay.submit.await_count == 1
    assert queue.list() == []


async def test_removed_item_is_skipped(queue, clock):
    relay = _relay()
    worker = _worker(queue, relay, clock)

    assert await worker.process("missing") is False
    relay.submit.assert_not_awaited()


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

async def test_run_drains_until_stopped(queue, clock):
    relay = _relay(SubmissionTimeout("offline"), RECEIPT)
    worker = _worker(
        queue,
        relay,
        clock,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.01,
        worker_poll_interval_seconds=0.01,
    )
    queue.enqueue(_ref(), "signed-tx")
    stop = anyio.Event()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(worker.run, stop)
            await anyio.sleep(0.05)
            clock.advance(1)
            while queue.list():
                await anyio.sleep(0.01)
            stop.set()

    assert relay.submit.await_count == 2


async def test_run_prunes_stale_capped_items(queue, clock):
    relay = _relay(SubmissionRejected("refused"))
    worker = _worker(
        queue,
        relay,
        clock,
        failed_retention_seconds=60,
        worker_poll_interval_seconds=0.01,
    )
    queue.enqueue(_ref(), "signed-tx")
    await worker.drain_once()
    assert len(queue.list()) == 1

    clock.advance(61)
    stop = anyio.Event()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(worker.run, stop)
            while queue.list():
                await anyio.sleep(0.01)
            stop.set()

    assert queue.list() == []


async def test_run_survives_a_failing_drain_pass(queue, clock, monkeypatch):
    relay = _relay(RECEIPT)
    worker = _worker(queue, relay, clock, worker_poll_interval_seconds=0.01)
    queue.enqueue(_ref(), "signed-tx")
    real_due = queue.due
    calls = []

    def flaky_due(now):
        calls.append(now)
        if len(calls) == 1:
            raise OSError("queue file unreadable")
        return real_due(now)

    monkeypatch.setattr(queue, "due", flaky_due)
    stop = anyio.Event()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(worker.run, stop)
            while queue.list():
                await anyio.sleep(0.01)
            stop.set()

    assert len(calls) >= 2
    assert relay.submit.await_count == 1

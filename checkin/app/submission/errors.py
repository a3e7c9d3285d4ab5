"""
Submission error taxonomy.

Retryable:
    SubmissionTimeout, SubmissionServerError
Terminal:
    SubmissionRejected (``signature_expired`` routes the item to
    needs_resign instead of failed)

Queue misuse:
    QueueItemNotFound, InvalidQueueTransition
"""

from __future__ import annotations

from typing import Optional


class SubmissionError(RuntimeError):
    """Base class for relay submission failures."""

    retryable = False


class SubmissionTimeout(SubmissionError):
    """The relay did not answer in time. Retryable."""

    retryable = True


class SubmissionServerError(SubmissionError):
    """The relay failed on its side (5xx). Retryable."""

    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SubmissionRejected(SubmissionError):
    """
    The relay refused the transaction. Terminal.

    ``signature_expired`` marks a transaction whose signature is no longer
    accepted; it can be salvaged by re-signing.
    """

    def __init__(
        self,
        message: str,
        *,
        signature_expired: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.signature_expired = signature_expired
        self.code = code


class SubmissionPending(RuntimeError):
    """
    Internal sentinel for a submitted but not yet finalized transaction.

    Raised while polling finalization status. Explicitly retryable.
    """


class QueueItemNotFound(KeyError):
    """No queue item with the given id."""


class InvalidQueueTransition(RuntimeError):
    """The requested status change is not allowed from the current state."""

"""
Check-in progress events.

Scan stage snapshots, streamed to ``/scans/stream`` clients as
server-sent events, and submission lifecycle changes from the worker.
"""

from .models import VerificationEvent, VerificationEventType
from .emitter import NullEventEmitter, VerificationEventEmitter
from .memory_emitter import MemoryQueueEventEmitter

__all__ = [
    "MemoryQueueEventEmitter",
    "NullEventEmitter",
    "VerificationEvent",
    "VerificationEventEmitter",
    "VerificationEventType",
]

"""
Scan rate limiting.

Moving-window limiter keyed by client, backed by the ``limits`` package
(the engine behind slowapi). Once a client uses up its attempts inside
the window it is blocked for a fixed duration, after which its history
is cleared.

Per-client state lives in a ``limits`` memory storage, which expires
idle windows on its own.

Defaults: 5 scans per 60 seconds, then blocked for 300 seconds.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from checkin.app.config import Settings

logger = logging.getLogger(__name__)


class ScanRateLimited(RuntimeError):
    """Raised when a client exceeded its scan budget."""

    def __init__(self, retry_after: float, *, blocked: bool):
        super().__init__(
            f"Too many scan attempts, retry in {retry_after:.0f}s"
        )
        self.retry_after = retry_after
        self.blocked = blocked


class ScanRateLimiter:
    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_seconds: int = 60,
        block_seconds: int = 300,
        storage: Optional[MemoryStorage] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")

        self._storage = storage or MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)
        self._scan_item = RateLimitItemPerSecond(
            max_attempts, window_seconds, namespace="SCAN"
        )
        self._block_item: Optional[RateLimitItem] = None
        if block_seconds > 0:
            self._block_item = RateLimitItemPerSecond(
                1, block_seconds, namespace="SCAN_BLOCK"
            )
        self._block_seconds = block_seconds
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ScanRateLimiter":
        return cls(
            max_attempts=settings.scan_rate_limit_attempts,
            window_seconds=settings.scan_rate_limit_window_seconds,
            block_seconds=settings.scan_rate_limit_block_seconds,
            **kwargs,
        )

    def acquire(self, client: str) -> int:
        """
        Record one scan attempt for ``client``.

        Returns the attempts left in the current window. Raises
        ScanRateLimited when the client is blocked or out of attempts.
        """
        strategy = self._strategy

        with self._lock:
            if self._block_item is not None and not strategy.test(
                self._block_item, client
            ):
                raise ScanRateLimited(
                    self._retry_after(self._block_item, client),
                    blocked=True,
                )

            if not strategy.hit(self._scan_item, client):
                if self._block_item is None:
                    raise ScanRateLimited(
                        self._retry_after(self._scan_item, client),
                        blocked=False,
                    )
                # Block served while the window is still full
                strategy.clear(self._scan_item, client)
                strategy.hit(self._scan_item, client)

            remaining = strategy.get_window_stats(self._scan_item, client).remaining

            if remaining == 0 and self._block_item is not None:
                strategy.hit(self._block_item, client)
                logger.warning(
                    "scan_rate_limit_blocked",
                    extra={"block_seconds": self._block_seconds},
                )

            return remaining

    def reset(self, client: Optional[str] = None) -> None:
        with self._lock:
            if client is None:
                self._storage.reset()
                return

            self._strategy.clear(self._scan_item, client)
            if self._block_item is not None:
                self._strategy.clear(self._block_item, client)

    def _retry_after(self, item: RateLimitItem, client: str) -> float:
        reset_time = self._strategy.get_window_stats(item, client).reset_time
        return max(0.0, reset_time - time.time())

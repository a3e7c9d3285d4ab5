"""
Nonce ledger.

Bounded, persisted, insertion-ordered set of accepted claim nonces.
Nonces are stored as privacy digests, never in raw form.

Check-and-commit is a critical section guarded by a single explicit
mutex: two concurrent verifications can never both commit the same
nonce. The ledger has an explicit open/close lifecycle and is injected
into the freshness gate; it is not a process-wide singleton.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from checkin.app.storage.store import KeyValueStore
from checkin.app.utils.hashing import hash_nonce

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_KEY = "used_nonces"


class NonceLedgerClosed(RuntimeError):
    """Raised when the ledger is used outside its open/close lifecycle."""


class NonceLedger:
    """
    Persisted set of accepted nonces with oldest-first eviction.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        capacity: int = 1000,
        key: str = DEFAULT_LEDGER_KEY,
    ) -> None:
        if capacity < 1:
            raise ValueError("Nonce ledger capacity must be at least 1")

        self._store = store
        self._capacity = capacity
        self._key = key
        self._lock = threading.Lock()
        self._digests: Optional[List[str]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._digests is not None

    def open(self) -> "NonceLedger":
        with self._lock:
            if self._digests is None:
                stored = self._store.get(self._key) or []
                self._digests = list(stored)[-self._capacity:]
                logger.info(
                    "nonce_ledger_opened",
                    extra={"entries": len(self._digests)},
                )
        return self

    def close(self) -> None:
        with self._lock:
            self._digests = None

    def __enter__(self) -> "NonceLedger":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def contains(self, nonce: str) -> bool:
        """Membership test. Never inserts."""
        digest = hash_nonce(nonce)
        with self._lock:
            return digest in self._require_open()

    def commit(self, nonce: str) -> bool:
        """
        Atomically insert ``nonce`` if absent.

        Returns False when the nonce was already present, i.e. another
        verification committed it first. The insert is durable before
        this method returns True.
        """
        digest = hash_nonce(nonce)

        with self._lock:
            digests = self._require_open()
            if digest in digests:
                return False

            capacity = self._capacity

            def mutate(current):
                persisted = list(current or [])
                if digest in persisted:
                    return persisted, (False, persisted)
                persisted.append(digest)
                # Oldest-first eviction
                persisted = persisted[-capacity:]
                return persisted, (True, persisted)

            inserted, persisted = self._store.read_modify_write(
                self._key, mutate
            )
            self._digests = persisted

        if inserted:
            logger.info(
                "nonce_committed",
                extra={"nonce_digest": digest[:16]},
            )
        return inserted

    def __len__(self) -> int:
        with self._lock:
            return len(self._require_open())

    def _require_open(self) -> List[str]:
        if self._digests is None:
            raise NonceLedgerClosed("Nonce ledger is not open")
        return self._digests

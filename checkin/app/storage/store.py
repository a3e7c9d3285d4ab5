"""
Durable key/value storage.

The verifier needs exactly two guarantees from persistence:

- atomic read-modify-write on a single key
- durability before acknowledgment (a mutation is complete only once it
  is on stable storage)

No specific storage engine is assumed. ``InMemoryStore`` serves tests
and ephemeral deployments; ``JsonFileStore`` keeps one JSON document
per key and replaces it atomically (write temp file, fsync, rename).
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_RE = re.compile(r"^[a-zA-Z0-9_.-]{1,64}$")


class StorageError(RuntimeError):
    """Raised when a value cannot be read from or written to storage."""


class KeyValueStore(Protocol):
    """Persistence collaborator interface."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def read_modify_write(
        self,
        key: str,
        mutate: Callable[[Optional[Any]], Tuple[Any, T]],
    ) -> T:
        """
        Atomically apply ``mutate`` to the current value of ``key``.

        ``mutate`` receives the current JSON-compatible value (or None)
        and returns ``(new_value, result)``. The new value is durably
        stored before ``result`` is returned. If ``mutate`` raises, the
        stored value is left untouched.
        """
        ...

    def delete(self, key: str) -> None:
        ...


def _check_key(key: str) -> None:
    if not _KEY_RE.match(key):
        raise ValueError(f"Invalid storage key: {key!r}")


class InMemoryStore:
    """
    Process-local store.

    Values are deep-copied in and out so callers can never mutate stored
    state without going through ``read_modify_write``.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        _check_key(key)
        with self._lock:
            return copy.deepcopy(self._data.get(key))

    def read_modify_write(self, key, mutate):
        _check_key(key)
        with self._lock:
            current = copy.deepcopy(self._data.get(key))
            new_value, result = mutate(current)
            self._data[key] = copy.deepcopy(new_value)
            return result

    def delete(self, key: str) -> None:
        _check_key(key)
        with self._lock:
            self._data.pop(key, None)


class JsonFileStore:
    """
    File-backed store, one ``<key>.json`` document per key.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, key: str) -> Path:
        _check_key(key)
        return self._directory / f"{key}.json"

    def _read(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to read {path.name}: {exc}") from exc

    def _write(self, path: Path, value: Any) -> None:
        data = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        fd, tmp_name = tempfile.mkstemp(
            dir=self._directory,
            prefix=f".{path.stem}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise StorageError(f"Failed to write {path.name}: {exc}") from exc

        self._fsync_directory()

    def _fsync_directory(self) -> None:
        # Directory fsync makes the rename durable; not supported everywhere.
        try:
            dir_fd = os.open(self._directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            logger.debug("directory_fsync_unsupported")
        finally:
            os.close(dir_fd)

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        with self._lock:
            return self._read(path)

    def read_modify_write(self, key, mutate):
        path = self._path(key)
        with self._lock:
            current = self._read(path)
            new_value, result = mutate(current)
            self._write(path, new_value)
            return result

    def delete(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            self._fsync_directory()

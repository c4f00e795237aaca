"""
Backing stores for the port ledger.

A store exposes one primitive: an exclusive transaction over the whole
name-keyed mapping. Everything read inside the transaction is written back
wholesale (and only if it changed) before the lock is released, so callers
never observe a partially written ledger.

File layout (JSON)::

    {
        "demo-app": {"port": 3320, "owner": "alice", "kind": "static",
                     "category": "frontend", "allocated_at": "2026-..."},
        "legacy-app": 3321
    }
"""
import asyncio
import copy
import errno
import fcntl
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from dockhand.core.config import settings
from dockhand.core.exceptions import LedgerCorruptedError, LedgerLockError
from dockhand.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


class LedgerStore(ABC):
    """Abstract name-keyed mapping with atomic-rewrite-under-lock semantics."""

    @abstractmethod
    def transaction(self) -> "AsyncIterator[Dict[str, Any]]":
        """
        Async context manager yielding the mutable mapping under an exclusive lock.

        Mutations made to the yielded dict are persisted when the block exits
        normally. If the block raises, nothing is written.
        """

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time copy of the mapping without taking the lock."""


class JsonFileLedgerStore(LedgerStore):
    """
    JSON file store guarded by an inter-process ``flock``.

    The lock lives on a sidecar ``<path>.lock`` file so the data file itself can
    be replaced atomically (write temp file, fsync, ``os.replace``).
    """

    def __init__(
        self,
        path: Optional[str] = None,
        lock_policy: Optional[RetryPolicy] = None,
    ):
        self.path = Path(path or settings.PORTS_FILE)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_policy = lock_policy or RetryPolicy(
            max_attempts=settings.LEDGER_LOCK_RETRIES + 1,
            delay=settings.LEDGER_LOCK_RETRY_DELAY,
            backoff=2.0,
        )

    async def _acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.lock_path, "a+")
        try:
            for attempt in self.lock_policy.attempts():
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return lock_file
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if self.lock_policy.is_last(attempt):
                        break
                    logger.debug(f"Ledger lock busy (attempt {attempt}), retrying...")
                    await self.lock_policy.sleep(attempt)
        except BaseException:
            # Includes cancellation while waiting between attempts
            lock_file.close()
            raise

        lock_file.close()
        raise LedgerLockError(str(self.path), self.lock_policy.max_attempts)

    @staticmethod
    def _release(lock_file) -> None:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LedgerCorruptedError(str(self.path), str(e))
        if not isinstance(data, dict):
            raise LedgerCorruptedError(str(self.path), "top-level value is not an object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Dict[str, Any]]:
        lock_file = await self._acquire()
        try:
            data = self._read()
            before = copy.deepcopy(data)
            yield data
            if data != before:
                self._write(data)
        finally:
            self._release(lock_file)

    def snapshot(self) -> Dict[str, Any]:
        try:
            return self._read()
        except LedgerCorruptedError as e:
            logger.error(f"Ledger snapshot failed: {e.message}")
            return {}


class MemoryLedgerStore(LedgerStore):
    """In-process store; the lock only serializes coroutines of one event loop."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Dict[str, Any]]:
        async with self._lock:
            working = copy.deepcopy(self._data)
            yield working
            self._data = working

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

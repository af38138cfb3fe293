"""
Xedis store - command layer and component orchestration
Ties the key table, journal, snapshots and expiration scheduler together
behind a Redis-like command surface.
"""

import json
import logging
import os
import re
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import aiofiles.os
import psutil

from ..config import XedisConfig
from ..exceptions import KeyNotFoundError, PersistenceIOError, TypeMismatchError
from ..storage import (
    JournalWriter,
    RecoveryResult,
    Snapshotter,
    rebuild_journal,
    recover,
)
from .table import MemoryTable, Record, now_ms
from .ttl import ExpirationScheduler

logger = logging.getLogger(__name__)

_INTEGER_RE = re.compile(r"-?\d+")


@dataclass
class DiagnosticEvent:
    """Non-fatal problem reported outside the command that hit it"""

    kind: str
    message: str
    error: Optional[Exception] = None
    timestamp: float = field(default_factory=time.time)


class XedisStore:
    """
    Embeddable key-value store with a Redis-like command surface.

    Features:
    - String values with optional per-key TTL
    - Append-only journal with crash-tolerant recovery
    - Periodic and on-demand snapshots used as a recovery fallback
    - Deadline-driven expiration

    Usage::

        store = XedisStore(XedisConfig(name="sessions"))
        await store.start()
        await store.set("user:1", "alice", ttl=60)
        await store.stop()

    Command-level errors (KeyNotFoundError, TypeMismatchError) are raised to
    the caller. Recovery problems and background persistence failures are
    logged and passed to ``on_diagnostic``.
    """

    def __init__(
        self,
        config: Optional[XedisConfig] = None,
        on_diagnostic: Optional[Callable[[DiagnosticEvent], None]] = None,
    ):
        self.config = config or XedisConfig()

        errors = self.config.validate()
        if errors:
            raise ValueError(f"Invalid configuration: {'; '.join(errors)}")

        logging.getLogger("xedis").setLevel(self.config.log_level.upper())

        self.on_diagnostic = on_diagnostic
        self.diagnostics: Deque[DiagnosticEvent] = deque(maxlen=100)
        self.recovery: Optional[RecoveryResult] = None
        self._running = False

        self.table = MemoryTable()
        self.scheduler = ExpirationScheduler(on_expire=self._on_key_expired)
        self.journal = JournalWriter(
            str(self.config.journal_path),
            fsync_policy=self.config.fsync_policy,
            snapshot_source=self._live_records,
            rewrite_percentage=self.config.journal_rewrite_percentage,
            rewrite_min_size=self.config.journal_rewrite_min_size,
            on_error=self._on_persistence_error,
        )
        self.snapshotter = Snapshotter(
            str(self.config.snapshot_path),
            source=self._live_records,
            on_error=self._on_persistence_error,
        )

        self.stats = {
            "start_time": time.time(),
            "keyspace_hits": 0,
            "keyspace_misses": 0,
            "mutations": 0,
            "expired_keys": 0,
        }

    # Lifecycle

    async def start(self):
        """Recover persisted state and start background work"""
        if self._running:
            logger.warning("Store is already running")
            return

        logger.info(f"Starting store '{self.config.name}' in {self.config.data_path}")
        await aiofiles.os.makedirs(self.config.data_path, exist_ok=True)

        result = await recover(self.config.journal_path, self.snapshotter)
        self.recovery = result
        if result.degraded:
            self._emit(
                "recovery-degraded",
                f"Recovered from {result.source.value} after errors: "
                f"{'; '.join(result.errors)}",
            )

        expired = self._install(result.records)
        if expired:
            logger.info(f"Dropped {len(expired)} keys that expired while stopped")

        if result.rewrite_journal:
            # The journal must hold the recovered state before appends go to it
            try:
                result.quarantined_journal = await rebuild_journal(
                    self.config.journal_path,
                    self._live_records(),
                    quarantine=result.journal_corrupt,
                )
            except Exception as e:
                self.table.clear()
                self.scheduler.clear()
                self._emit("journal-rebuild", f"Could not rebuild journal: {e}", e)
                raise PersistenceIOError(f"Could not rebuild journal: {e}") from e
            expired = []

        await self.journal.open()
        self._running = True

        for key in expired:
            self.journal.append(key, None)

        self.scheduler.start()
        self.snapshotter.start_timer(self.config.snapshot_interval)
        self.stats["start_time"] = time.time()

        logger.info(
            f"Store '{self.config.name}' started with {self.table.size()} keys "
            f"(recovered from {result.source.value})"
        )

    async def stop(self):
        """Stop background work, write a final snapshot and close the journal"""
        if not self._running:
            return

        logger.info(f"Stopping store '{self.config.name}'...")
        self._running = False

        await self.scheduler.stop()
        await self.snapshotter.stop()

        try:
            await self.snapshotter.save()
        except PersistenceIOError as e:
            self._emit("snapshot-write", f"Final snapshot failed: {e}", e)

        await self.journal.close()
        logger.info(f"Store '{self.config.name}' stopped")

    def is_running(self) -> bool:
        return self._running

    def _install(self, records: Dict[str, Record]) -> List[str]:
        """Load recovered records, returning keys whose TTL already elapsed"""
        current = now_ms()
        live = {}
        expired = []

        for key, record in records.items():
            if record.is_expired(current):
                expired.append(key)
            else:
                live[key] = record

        self.table.load(live)
        for key, record in live.items():
            if record.expiration is not None:
                self.scheduler.schedule(key, record.expiration)

        return expired

    # Internal mutation path

    def _check_running(self):
        if not self._running:
            raise RuntimeError("Store is not running")

    def _lookup(self, key: str) -> Optional[Record]:
        """Return the live record for a key, expiring it if it is due"""
        self._check_running()
        _check_key(key)
        record = self.table.get(key)

        if record is not None and record.is_expired():
            self._expire(key, record.expiration)
            record = None

        if record is None:
            self.stats["keyspace_misses"] += 1
        else:
            self.stats["keyspace_hits"] += 1
        return record

    def _store(self, key: str, record: Record):
        self._check_running()

        self.scheduler.cancel(key)
        self.table.put(key, record)
        self.journal.append(key, record)
        if record.expiration is not None:
            self.scheduler.schedule(key, record.expiration)

        self.stats["mutations"] += 1

    def _remove(self, key: str) -> Optional[Record]:
        self._check_running()

        self.scheduler.cancel(key)
        record = self.table.remove(key)
        if record is not None:
            self.journal.append(key, None)
            self.stats["mutations"] += 1
        return record

    def _expire(self, key: str, expiration: Optional[int]):
        record = self.table.get(key)
        if record is None or record.expiration != expiration:
            # Overwritten or persisted since this deadline was scheduled
            logger.debug(f"Ignoring stale expiry for key '{key}'")
            return

        self._remove(key)
        self.stats["expired_keys"] += 1
        logger.debug(f"Key expired: {key}")

    def _on_key_expired(self, key: str, expiration: int):
        if not self._running:
            return
        self._expire(key, expiration)

    def _live_records(self) -> Dict[str, Record]:
        current = now_ms()
        return {
            key: record
            for key, record in self.table.copy().items()
            if not record.is_expired(current)
        }

    # Diagnostics

    def _emit(self, kind: str, message: str, error: Optional[Exception] = None):
        event = DiagnosticEvent(kind=kind, message=message, error=error)
        self.diagnostics.append(event)
        logger.warning(f"[{kind}] {message}")

        if self.on_diagnostic is None:
            return
        try:
            self.on_diagnostic(event)
        except Exception as e:
            logger.error(f"Error in diagnostic callback: {e}")

    def _on_persistence_error(self, kind: str, error: Exception):
        self._emit(kind, f"Background persistence failed: {error}", error)

    # Core KV operations

    async def get(self, key: str) -> str:
        """
        Get the value of a key.

        Raises:
            KeyNotFoundError: the key does not exist or has expired
        """
        record = self._lookup(key)
        if record is None:
            raise KeyNotFoundError(key)
        return record.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """
        Set a key, replacing its value and any previous TTL.

        Args:
            key: The key to set
            value: The value, stored as text
            ttl: Time-to-live in seconds (optional)

        Returns:
            True
        """
        _check_key(key)
        expiration = None
        if ttl is not None:
            if ttl <= 0:
                raise ValueError(f"Invalid expire time: {ttl}")
            expiration = now_ms() + int(ttl * 1000)

        self._store(key, Record(_to_text(value), expiration))
        return True

    async def delete(self, key: str) -> bool:
        """
        Delete a key.

        Raises:
            KeyNotFoundError: the key does not exist
        """
        if self._lookup(key) is None:
            raise KeyNotFoundError(key)
        self._remove(key)
        return True

    async def exists(self, key: str) -> bool:
        return self._lookup(key) is not None

    async def mget(self, *keys: str) -> List[Optional[str]]:
        """Values for several keys, None for each missing one"""
        values = []
        for key in keys:
            record = self._lookup(key)
            values.append(record.value if record is not None else None)
        return values

    async def getset(self, key: str, value: Any) -> str:
        """
        Replace the value of an existing key, returning the old one.

        The TTL is cleared. Nothing is written when the key is missing.

        Raises:
            KeyNotFoundError: the key does not exist
        """
        record = self._lookup(key)
        if record is None:
            raise KeyNotFoundError(key)

        self._store(key, Record(_to_text(value)))
        return record.value

    async def dump(self, key: str) -> Any:
        """Structured decode of a stored value (JSON, else the raw text)"""
        record = self._lookup(key)
        if record is None:
            raise KeyNotFoundError(key)

        try:
            return json.loads(record.value)
        except ValueError:
            return record.value

    async def randomkey(self) -> Optional[str]:
        """A uniformly chosen live key, None when the store is empty"""
        while True:
            key = self.table.random_key()
            if key is None:
                return None
            if self._lookup(key) is not None:
                return key

    async def keys(self, pattern: str = "*") -> List[str]:
        """Live keys matching a glob-style pattern"""
        return [key for key in self.table.keys(pattern) if self._lookup(key) is not None]

    async def dbsize(self) -> int:
        return len(await self.keys())

    async def flushdb(self) -> int:
        """Delete every key, returning how many were removed"""
        removed = 0
        for key in self.table.keys():
            if self._remove(key) is not None:
                removed += 1
        logger.info(f"Flushed {removed} keys")
        return removed

    # TTL operations

    async def expire(self, key: str, seconds: float) -> bool:
        """
        Set a key's time-to-live in seconds, replacing any previous one.

        A non-positive TTL deletes the key immediately.

        Raises:
            KeyNotFoundError: the key does not exist
        """
        return await self.pexpire(key, int(seconds * 1000))

    async def pexpire(self, key: str, milliseconds: int) -> bool:
        """Millisecond variant of expire"""
        record = self._lookup(key)
        if record is None:
            raise KeyNotFoundError(key)

        if milliseconds <= 0:
            self._remove(key)
            return True

        self._store(key, Record(record.value, now_ms() + milliseconds))
        return True

    async def persist(self, key: str) -> bool:
        """
        Remove a key's TTL.

        Returns:
            True if a TTL was removed, False if the key is missing or has none
        """
        record = self._lookup(key)
        if record is None or record.expiration is None:
            return False

        self._store(key, Record(record.value))
        return True

    async def pttl(self, key: str) -> int:
        """Remaining TTL in ms; -2 if the key is missing, -1 if it has no TTL"""
        record = self._lookup(key)
        if record is None:
            return -2
        if record.expiration is None:
            return -1
        return record.remaining_ms()

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -2 if the key is missing, -1 if it has no TTL"""
        remaining = await self.pttl(key)
        if remaining < 0:
            return remaining
        return (remaining + 500) // 1000

    # String operations

    async def append(self, key: str, value: Any) -> int:
        """Append to a key's value keeping its TTL; returns the new length"""
        value = _to_text(value)
        record = self._lookup(key)

        if record is None:
            new_record = Record(value)
        else:
            new_record = Record(record.value + value, record.expiration)

        self._store(key, new_record)
        return len(new_record.value)

    async def incr(self, key: str, step: int = 1) -> str:
        """
        Add ``step`` to the integer stored at a key.

        A missing key counts as 0. Like SET, this clears the key's TTL.

        Raises:
            TypeMismatchError: the stored value is not an integer
        """
        record = self._lookup(key)
        current = 0
        if record is not None:
            if not _INTEGER_RE.fullmatch(record.value):
                raise TypeMismatchError(key, record.value)
            current = int(record.value)

        new_value = str(current + int(step))
        self._store(key, Record(new_value))
        return new_value

    async def decr(self, key: str, step: int = 1) -> str:
        return await self.incr(key, -step)

    async def strlen(self, key: str) -> int:
        record = self._lookup(key)
        return len(record.value) if record is not None else 0

    async def getrange(self, key: str, start: int, end: int) -> str:
        """Substring between two inclusive offsets; negative offsets count from the end"""
        record = self._lookup(key)
        value = record.value if record is not None else ""
        length = len(value)

        if start < 0:
            start = max(0, length + start)
        if end < 0:
            end = max(0, length + end)
        end = min(end, length - 1)

        if length == 0 or start > end:
            return ""
        return value[start:end + 1]

    async def setrange(self, key: str, offset: int, value: Any) -> int:
        """
        Overwrite part of a value starting at ``offset``.

        Writing past the end pads with NUL characters; content after the
        written window is kept, and so is the TTL. Returns the new length.
        """
        value = _to_text(value)
        record = self._lookup(key)
        current = record.value if record is not None else ""

        if offset < 0:
            offset += len(current)
            if offset < 0:
                raise ValueError("offset is out of range")

        if not value:
            return len(current)

        padded = current.ljust(offset, "\x00")
        new_value = padded[:offset] + value + padded[offset + len(value):]
        expiration = record.expiration if record is not None else None

        self._store(key, Record(new_value, expiration))
        return len(new_value)

    # Persistence

    async def save(self) -> bool:
        """
        Write a snapshot and wait until it is durable.

        Raises:
            PersistenceIOError: the snapshot could not be written
        """
        self._check_running()
        await self.snapshotter.save()
        return True

    async def bgsave(self) -> bool:
        """
        Snapshot in the background.

        Returns:
            True if started now, False if deferred behind a running snapshot
        """
        self._check_running()
        return self.snapshotter.bgsave()

    async def bgrewriteaof(self, wait: bool = False) -> bool:
        """
        Compact the journal to one entry per live key.

        Mutations made while the rewrite runs are appended after it.

        Args:
            wait: Wait for the rewrite and raise PersistenceIOError on failure
        """
        self._check_running()
        future = self.journal.request_rewrite()
        if wait:
            await future
        return True

    async def sync(self):
        """Wait until every queued journal append is written and synced"""
        self._check_running()
        await self.journal.flush(sync=self.config.fsync_policy != "no")

    async def lastsave(self) -> Optional[int]:
        """Epoch seconds of the last successful snapshot"""
        if self.snapshotter.last_save is None:
            return None
        return int(self.snapshotter.last_save)

    def info(self) -> Dict[str, Any]:
        """Store statistics and persistence state"""
        process = psutil.Process()
        recovery = self.recovery

        return {
            "server": {
                "name": self.config.name,
                "data_dir": str(self.config.data_path),
                "pid": os.getpid(),
                "uptime_seconds": time.time() - self.stats["start_time"],
                "running": self.is_running(),
            },
            "memory": {
                "used_memory_rss": process.memory_info().rss,
            },
            "keyspace": {
                "keys": self.table.size(),
                "expires": len(self.scheduler),
            },
            "stats": dict(self.stats),
            "persistence": {
                "recovery_source": recovery.source.value if recovery else None,
                "recovery_degraded": recovery.degraded if recovery else False,
                "journal": self.journal.get_stats(),
                "snapshot": self.snapshotter.get_stats(),
                "diagnostics": len(self.diagnostics),
            },
            "expiration": self.scheduler.get_stats(),
        }


def _check_key(key: str):
    if not isinstance(key, str) or not key:
        raise ValueError(f"Keys must be non-empty strings, got {key!r}")


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


@asynccontextmanager
async def open_store(
    config: Optional[XedisConfig] = None,
    on_diagnostic: Optional[Callable[[DiagnosticEvent], None]] = None,
):
    """Async context manager for a started store"""
    store = XedisStore(config, on_diagnostic=on_diagnostic)
    try:
        await store.start()
        yield store
    finally:
        await store.stop()

"""
Snapshot persistence for Xedis.

A snapshot is one JSON object mapping key -> record, always replaced as a
whole. Writes go to a staging file that is fsynced and then atomically
renamed over the snapshot, so a reader never sees a torn file.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Dict, Optional

import aiofiles
import aiofiles.os

from ..core.table import Record
from ..exceptions import PersistenceIOError

logger = logging.getLogger(__name__)


class Snapshotter:
    """
    Writes and loads full snapshots of the key table.

    One lock guards the destination file. A background save requested while
    another one is running is not started concurrently: it is remembered and
    run again once the current write finishes.
    """

    def __init__(
        self,
        file_path: str,
        source: Callable[[], Dict[str, Record]],
        on_error: Optional[Callable[[str, Exception], None]] = None,
    ):
        self.file_path = Path(file_path)
        self.temp_path = self.file_path.with_name(self.file_path.name + ".tmp")
        self.source = source
        self.on_error = on_error

        self._lock = asyncio.Lock()
        self._bg_task: Optional[asyncio.Task] = None
        self._retry_requested = False
        self._timer_task: Optional[asyncio.Task] = None

        self.last_save: Optional[float] = None
        self.stats = {
            "snapshots_created": 0,
            "snapshots_deferred": 0,
            "snapshot_errors": 0,
            "last_snapshot_keys": 0,
            "last_snapshot_seconds": 0.0,
        }

    @property
    def in_progress(self) -> bool:
        return self._lock.locked() or (
            self._bg_task is not None and not self._bg_task.done()
        )

    async def save(self) -> int:
        """
        Write a snapshot and return once it is durable.

        Returns:
            Number of keys written

        Raises:
            PersistenceIOError: the snapshot could not be written
        """
        async with self._lock:
            try:
                return await self._write()
            except Exception as e:
                self.stats["snapshot_errors"] += 1
                logger.error(f"Snapshot save failed: {e}")
                raise PersistenceIOError(f"Snapshot save failed: {e}") from e

    def bgsave(self) -> bool:
        """
        Start a snapshot in the background.

        Returns:
            True if a new write was started, False if one was already running
            and this request was deferred until it finishes
        """
        if self._bg_task is not None and not self._bg_task.done():
            self._retry_requested = True
            self.stats["snapshots_deferred"] += 1
            logger.debug("Snapshot already in progress, deferring request")
            return False

        self._retry_requested = False
        self._bg_task = asyncio.create_task(self._background_save())
        return True

    async def wait(self):
        """Wait for the running background snapshot, if any"""
        while self._bg_task is not None and not self._bg_task.done():
            await asyncio.shield(self._bg_task)

    async def _background_save(self):
        while True:
            async with self._lock:
                try:
                    await self._write()
                except Exception as e:
                    self.stats["snapshot_errors"] += 1
                    logger.error(f"Background snapshot failed: {e}")
                    self._report("snapshot-write", e)

            if not self._retry_requested:
                break
            self._retry_requested = False

    async def _write(self) -> int:
        started = time.time()
        records = self.source()
        payload = json.dumps(
            {key: record.to_dict() for key, record in records.items()},
            separators=(",", ":"),
        ).encode("utf-8")

        await aiofiles.os.makedirs(self.file_path.parent, exist_ok=True)
        try:
            async with aiofiles.open(self.temp_path, "wb") as f:
                await f.write(payload)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(self.temp_path, self.file_path)
        except Exception:
            if await aiofiles.os.path.exists(self.temp_path):
                await aiofiles.os.remove(self.temp_path)
            raise

        self.last_save = time.time()
        self.stats["snapshots_created"] += 1
        self.stats["last_snapshot_keys"] = len(records)
        self.stats["last_snapshot_seconds"] = self.last_save - started
        logger.info(f"Snapshot written: {len(records)} keys to {self.file_path}")
        return len(records)

    async def load(self) -> Optional[Dict[str, Record]]:
        """
        Load the snapshot.

        Returns:
            The key -> Record mapping, or None when no snapshot exists

        Raises:
            ValueError: the snapshot is not a valid key -> record object
            OSError: the snapshot could not be read
        """
        if not await aiofiles.os.path.exists(self.file_path):
            return None

        async with aiofiles.open(self.file_path, "rb") as f:
            data = await f.read()

        parsed = json.loads(data.decode("utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError("Snapshot is not a JSON object")

        records = {}
        for key, value in parsed.items():
            if not key:
                raise ValueError("Snapshot contains an empty key")
            records[key] = Record.from_dict(value)

        self.last_save = await aiofiles.os.path.getmtime(self.file_path)
        return records

    def start_timer(self, interval: float):
        """Run bgsave every ``interval`` seconds"""
        if interval <= 0 or self._timer_task is not None:
            return
        self._timer_task = asyncio.create_task(self._snapshot_scheduler(interval))

    async def stop(self):
        """Stop the timer and wait for an in-flight background snapshot"""
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        await self.wait()

    async def _snapshot_scheduler(self, interval: float):
        while True:
            try:
                await asyncio.sleep(interval)
                self.bgsave()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in snapshot scheduler: {e}")

    def _report(self, kind: str, error: Exception):
        if self.on_error is None:
            return
        try:
            self.on_error(kind, error)
        except Exception as e:
            logger.error(f"Error in snapshot error callback: {e}")

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "last_save": self.last_save,
            "in_progress": self.in_progress,
        }

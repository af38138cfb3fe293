"""
Key expiration scheduling.

Deadlines live in a min-heap of monotonic times. One coordinating task sleeps
until the nearest deadline, re-validates the entry and hands the key to the
expiry callback. Installing an earlier deadline wakes the task.
"""

import asyncio
import heapq
import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ExpirationEntry:
    """Pending removal of one key"""

    key: str
    deadline: float  # time.monotonic() based
    expiration: int  # absolute epoch ms enforced by this entry
    generation: int

    def __lt__(self, other):
        return (self.deadline, self.generation) < (other.deadline, other.generation)

    def is_due(self, current_time: Optional[float] = None) -> bool:
        if current_time is None:
            current_time = time.monotonic()
        return current_time >= self.deadline


class ExpirationScheduler:
    """
    Per-key deadline tracking with deferred removal.

    At most one entry per key is live. ``schedule`` and ``cancel`` replace or
    drop the live entry immediately; older heap items for the same key carry a
    stale generation and are discarded when they surface.

    All methods are meant to be called from the event loop thread that runs
    the scheduler.
    """

    def __init__(self, on_expire: Optional[Callable[[str, int], None]] = None):
        self.on_expire = on_expire

        # key -> live ExpirationEntry
        self._entries: Dict[str, ExpirationEntry] = {}
        self._heap: List[ExpirationEntry] = []
        self._generation = 0
        self._lock = RLock()

        self._wakeup = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self.stats = {
            "scheduled": 0,
            "cancelled": 0,
            "expired": 0,
        }

    def start(self):
        """Start the coordinating task"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.debug("Expiration scheduler started")

    async def stop(self):
        """Stop the coordinating task, keeping scheduled entries"""
        if not self._running:
            return

        self._running = False
        self._wakeup.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.debug("Expiration scheduler stopped")

    def schedule(self, key: str, expiration: int) -> ExpirationEntry:
        """
        Schedule removal of a key at an absolute epoch-ms expiration.

        Any pending removal for the key is cancelled first.

        Args:
            key: The key to expire
            expiration: Absolute expiration time in epoch milliseconds

        Returns:
            The installed entry
        """
        remaining = (expiration - time.time() * 1000) / 1000.0

        with self._lock:
            self._entries.pop(key, None)

            self._generation += 1
            entry = ExpirationEntry(
                key=key,
                deadline=time.monotonic() + max(0.0, remaining),
                expiration=expiration,
                generation=self._generation,
            )
            self._entries[key] = entry
            heapq.heappush(self._heap, entry)
            self.stats["scheduled"] += 1

            is_nearest = self._heap[0] is entry
            self._compact_heap_if_needed()

        if is_nearest:
            self._wakeup.set()

        logger.debug(f"Scheduled expiry of '{key}' in {remaining:.3f}s")
        return entry

    def cancel(self, key: str) -> bool:
        """
        Cancel the pending removal of a key.

        Returns:
            True if an entry was cancelled, False if none was pending
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self.stats["cancelled"] += 1

        logger.debug(f"Cancelled expiry of '{key}'")
        return True

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def pop_due(self, current_time: Optional[float] = None) -> List[ExpirationEntry]:
        """Remove and return every live entry whose deadline has passed"""
        if current_time is None:
            current_time = time.monotonic()

        due = []
        with self._lock:
            while self._heap and self._heap[0].is_due(current_time):
                entry = heapq.heappop(self._heap)
                live = self._entries.get(entry.key)
                if live is not None and live.generation == entry.generation:
                    del self._entries[entry.key]
                    due.append(entry)

        return due

    def next_timeout(self) -> Optional[float]:
        """Seconds until the nearest live deadline, None when idle"""
        with self._lock:
            while self._heap:
                head = self._heap[0]
                live = self._entries.get(head.key)
                if live is not None and live.generation == head.generation:
                    return max(0.0, head.deadline - time.monotonic())
                heapq.heappop(self._heap)
        return None

    def fire_due(self) -> int:
        """Hand every due key to the expiry callback"""
        fired = 0
        for entry in self.pop_due():
            self.stats["expired"] += 1
            fired += 1
            if self.on_expire is None:
                continue
            try:
                self.on_expire(entry.key, entry.expiration)
            except Exception as e:
                logger.error(f"Error in expiration callback for key '{entry.key}': {e}")
        return fired

    async def _run(self):
        while self._running:
            try:
                self.fire_due()

                self._wakeup.clear()
                timeout = self.next_timeout()
                if timeout == 0.0:
                    await asyncio.sleep(0)
                    continue
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout)
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in expiration scheduler: {e}")
                await asyncio.sleep(0.1)

    def _compact_heap_if_needed(self):
        # Stale items pile up when keys are rescheduled repeatedly
        if len(self._heap) <= 2 * len(self._entries) + 64:
            return

        self._heap = [
            entry
            for entry in self._heap
            if self._entries.get(entry.key) is entry
        ]
        heapq.heapify(self._heap)

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                **self.stats,
                "pending": len(self._entries),
                "heap_size": len(self._heap),
            }

    def clear(self):
        """Drop every pending removal"""
        with self._lock:
            self._entries.clear()
            self._heap.clear()

"""
Append-only journal for Xedis.

Every mutation is appended as one self-delimited fragment:

    "<key>":<record-json-or-null>,\n

Keys and records are JSON encoded, so a fragment never contains a raw
newline. The newline only keeps the file readable: readers accept fragments
with or without whitespace between them. ``null`` is a tombstone. Replaying
the fragments in order from an empty table rebuilds the table: the last
fragment per key wins.

A single writer task owns the file. Callers only enqueue fragments; the
writer appends them in batches, applies the fsync policy and performs
journal rewrites (compaction) in queue order, so mutations queued after a
rewrite request land after the rewritten journal is in place.
"""

import asyncio
import codecs
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os

from ..core.table import Record
from ..exceptions import JournalCorruptedError, PersistenceIOError

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()
_WHITESPACE = " \t\r\n"
_WHITESPACE_RE = re.compile(r"[ \t\r\n]*")


def encode_entry(key: str, record: Optional[Record]) -> bytes:
    """Encode one journal fragment; a None record is a tombstone"""
    payload = "null" if record is None else json.dumps(
        record.to_dict(), separators=(",", ":")
    )
    return f"{json.dumps(key)}:{payload},\n".encode("utf-8")


def _decode_at(text: str, pos: int) -> Tuple[str, Optional[Record], int]:
    """Decode the fragment starting at ``pos``; returns the index after its ','"""
    key, pos = _decoder.raw_decode(text, pos)
    if not isinstance(key, str) or not key:
        raise ValueError(f"Invalid journal key: {key!r}")

    if text[pos:pos + 1] != ":":
        raise ValueError("Missing ':' after journal key")

    payload, pos = _decoder.raw_decode(text, pos + 1)
    if text[pos:pos + 1] != ",":
        raise ValueError("Journal entry is not terminated by ','")

    record = None if payload is None else Record.from_dict(payload)
    return key, record, pos + 1


def decode_entry(fragment: str) -> Tuple[str, Optional[Record]]:
    """Decode exactly one fragment"""
    key, record, end = _decode_at(fragment, 0)
    if fragment[end:].strip(_WHITESPACE):
        raise ValueError("Unexpected data after journal entry")
    return key, record


@dataclass
class JournalReplay:
    """Result of parsing a journal"""

    records: Dict[str, Record] = field(default_factory=dict)
    entries: int = 0
    tombstones: int = 0
    valid_bytes: int = 0
    discarded_bytes: int = 0

    @property
    def truncated_tail(self) -> bool:
        return self.discarded_bytes > 0


def parse_journal(data: bytes) -> JournalReplay:
    """
    Replay raw journal bytes into a key -> Record mapping.

    Fragments are read one after another; whitespace between them (the
    newline the writer adds) is optional. A final fragment that cannot be
    decoded or lacks its closing ',' was cut short by a crash mid-append and
    is discarded. A malformed fragment with further entries on a later line
    means the journal is corrupt.

    Raises:
        JournalCorruptedError: a fragment before the tail could not be decoded
    """
    replay = JournalReplay()

    # Bytes of a character cut in half at EOF stay buffered, not decoded
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        text = decoder.decode(data, final=False)
    except UnicodeDecodeError as e:
        raise JournalCorruptedError(
            f"Invalid UTF-8 in journal at byte {e.start}: {e}", e.start
        ) from e

    pos = 0
    offset = 0
    while True:
        start = pos
        pos = _WHITESPACE_RE.match(text, pos).end()
        offset += pos - start
        if pos == len(text):
            break

        try:
            key, record, end = _decode_at(text, pos)
        except ValueError as e:
            newline = text.find("\n", pos)
            if newline == -1 or not text[newline:].strip(_WHITESPACE):
                # Torn write: nothing was appended after this fragment
                break
            raise JournalCorruptedError(
                f"Malformed journal entry at byte {offset}: {e}", offset
            ) from e

        replay.entries += 1
        if record is None:
            replay.tombstones += 1
            replay.records.pop(key, None)
        else:
            replay.records[key] = record

        offset += len(text[pos:end].encode("utf-8"))
        pos = end

    replay.valid_bytes = offset
    replay.discarded_bytes = len(data) - offset
    return replay


async def read_journal(path: Path) -> Optional[JournalReplay]:
    """Parse the journal file, None when it does not exist"""
    if not await aiofiles.os.path.exists(path):
        return None

    async with aiofiles.open(path, "rb") as f:
        data = await f.read()

    return parse_journal(data)


async def truncate_journal(path: Path, size: int):
    """Drop a torn tail so new appends follow the last complete entry"""
    async with aiofiles.open(path, "r+b") as f:
        await f.truncate(size)
        await f.flush()
        os.fsync(f.fileno())


async def quarantine_journal(path: Path) -> Path:
    """Move an unreadable journal aside instead of overwriting it"""
    target = path.with_name(f"{path.name}.corrupt-{int(time.time())}")
    await aiofiles.os.replace(path, target)
    logger.warning(f"Moved unreadable journal to {target}")
    return target


def journal_temp_path(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


async def write_compacted(path: Path, records: Dict[str, Record]) -> int:
    """Write one entry per record to ``path`` and fsync it; returns its size"""
    data = b"".join(encode_entry(key, record) for key, record in records.items())

    try:
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
            await f.flush()
            os.fsync(f.fileno())
    except Exception:
        if await aiofiles.os.path.isfile(path):
            await aiofiles.os.remove(path)
        raise

    return len(data)


async def rebuild_journal(
    path: Path, records: Dict[str, Record], quarantine: bool = False
) -> Optional[Path]:
    """
    Replace the journal with one entry per record before it is opened.

    The new journal is fully written and synced before it takes the place of
    the old one, so a failure or crash part way through leaves the previous
    journal (or no journal) behind and the next start recovers the same way.

    Args:
        path: The journal to replace
        records: The recovered state
        quarantine: Move the existing journal aside instead of discarding it

    Returns:
        Where the old journal was moved, if it was quarantined
    """
    temp_path = journal_temp_path(path)
    size = await write_compacted(temp_path, records)

    quarantined = None
    try:
        if quarantine and await aiofiles.os.path.exists(path):
            quarantined = await quarantine_journal(path)
        await aiofiles.os.replace(temp_path, path)
    except Exception:
        if await aiofiles.os.path.isfile(temp_path):
            await aiofiles.os.remove(temp_path)
        raise

    logger.info(f"Journal rebuilt: {len(records)} keys, {size} bytes")
    return quarantined


class _Barrier:
    """Queue marker resolved once everything queued before it is written"""

    def __init__(self, future: asyncio.Future, sync: bool = True):
        self.future = future
        self.sync = sync


class _Rewrite:
    """Queue marker for a journal rewrite"""

    def __init__(self, future: asyncio.Future, automatic: bool = False):
        self.future = future
        self.automatic = automatic


class _Stop:
    pass


def _consume_exception(future: asyncio.Future):
    # Fire-and-forget rewrites report failures through on_error instead
    if not future.cancelled():
        future.exception()


class JournalWriter:
    """Single-writer append-only journal"""

    def __init__(
        self,
        file_path: str,
        fsync_policy: str = "everysec",
        snapshot_source: Optional[Callable[[], Dict[str, Record]]] = None,
        rewrite_percentage: int = 100,
        rewrite_min_size: int = 1024 * 1024,
        on_error: Optional[Callable[[str, Exception], None]] = None,
    ):
        self.file_path = Path(file_path)
        self.fsync_policy = fsync_policy  # always, everysec, no
        self.snapshot_source = snapshot_source
        self.rewrite_percentage = rewrite_percentage
        self.rewrite_min_size = rewrite_min_size
        self.on_error = on_error

        self._file = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._size = 0
        self._base_size = 0
        self._pending_writes = 0
        self._last_fsync = time.monotonic()
        self._rewrite_pending = False

        self.stats = {
            "entries_written": 0,
            "bytes_written": 0,
            "fsyncs": 0,
            "rewrites": 0,
            "write_errors": 0,
        }

    @property
    def size(self) -> int:
        return self._size

    async def open(self):
        """Open the journal for appending and start the writer task"""
        if self._running:
            return

        await aiofiles.os.makedirs(self.file_path.parent, exist_ok=True)
        self._file = await aiofiles.open(self.file_path, "ab")
        self._size = self._base_size = await aiofiles.os.path.getsize(self.file_path)

        self._running = True
        self._task = asyncio.create_task(self._writer_loop())
        logger.info(f"Journal opened: {self.file_path} ({self._size} bytes)")

    async def close(self):
        """Drain queued appends, sync and close the journal"""
        if not self._running:
            return

        self._queue.put_nowait(_Stop())
        try:
            await self._task
        finally:
            self._running = False
            self._task = None
            if self._file is not None:
                await self._sync()
                await self._file.close()
                self._file = None

        logger.info("Journal closed")

    def append(self, key: str, record: Optional[Record]):
        """Queue a mutation; a None record is a tombstone"""
        self._queue.put_nowait(encode_entry(key, record))

    async def flush(self, sync: bool = True):
        """Wait until everything queued so far is written (and synced)"""
        self._check_open()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Barrier(future, sync))
        await future

    def request_rewrite(self) -> asyncio.Future:
        """
        Queue a journal rewrite.

        Returns:
            A future resolved when the rewritten journal is in place. The
            caller may ignore it; failures are also reported via on_error.
        """
        self._check_open()
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._rewrite_pending = True
        self._queue.put_nowait(_Rewrite(future))
        return future

    def _check_open(self):
        # Nothing would ever resolve a request queued on a closed journal
        if not self._running:
            raise RuntimeError("Journal is not open")

    async def _writer_loop(self):
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), self._idle_timeout())
            except asyncio.TimeoutError:
                await self._periodic_sync()
                continue

            batch = [item]
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())

            try:
                if await self._process(batch):
                    return

                await self._periodic_sync()
                self._maybe_schedule_rewrite()
            except Exception as e:
                logger.error(f"Error in journal writer: {e}")
                self._report("journal-writer", e)
                for pending in batch:
                    future = getattr(pending, "future", None)
                    if future is not None and not future.done():
                        future.set_exception(PersistenceIOError(str(e)))

    def _idle_timeout(self) -> Optional[float]:
        if self.fsync_policy == "everysec" and self._pending_writes:
            return max(0.0, 1.0 - (time.monotonic() - self._last_fsync))
        return None

    async def _process(self, batch: List) -> bool:
        """Write a batch in order; returns True when asked to stop"""
        buffer: List[bytes] = []

        for item in batch:
            if isinstance(item, bytes):
                buffer.append(item)
                continue

            await self._write(buffer)
            buffer = []

            if isinstance(item, _Barrier):
                if item.sync:
                    await self._sync()
                if not item.future.done():
                    item.future.set_result(None)
            elif isinstance(item, _Rewrite):
                await self._rewrite(item)
            elif isinstance(item, _Stop):
                return True

        await self._write(buffer)
        return False

    async def _write(self, chunks: List[bytes]):
        if not chunks:
            return

        data = b"".join(chunks)
        try:
            await self._file.write(data)
            await self._file.flush()
        except Exception as e:
            self.stats["write_errors"] += 1
            logger.error(f"Journal append failed ({len(chunks)} entries lost): {e}")
            self._report("journal-write", e)
            return

        self._size += len(data)
        self._pending_writes += len(chunks)
        self.stats["entries_written"] += len(chunks)
        self.stats["bytes_written"] += len(data)

        if self.fsync_policy == "always":
            await self._sync()

    async def _sync(self):
        if self._file is None or not self._pending_writes:
            return

        try:
            fd = self._file.fileno()
            await asyncio.get_running_loop().run_in_executor(None, os.fsync, fd)
        except Exception as e:
            logger.error(f"Journal fsync failed: {e}")
            self._report("journal-fsync", e)
            return

        self._pending_writes = 0
        self._last_fsync = time.monotonic()
        self.stats["fsyncs"] += 1

    async def _periodic_sync(self):
        if self.fsync_policy != "everysec":
            return
        if time.monotonic() - self._last_fsync >= 1.0:
            await self._sync()

    def _maybe_schedule_rewrite(self):
        if self._rewrite_pending or self.snapshot_source is None:
            return
        if self.rewrite_percentage <= 0 or self._size < self.rewrite_min_size:
            return

        growth = (self._size - self._base_size) * 100 / max(self._base_size, 1)
        if growth >= self.rewrite_percentage:
            logger.info(
                f"Journal grew {growth:.0f}% since last rewrite, starting automatic rewrite"
            )
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._rewrite_pending = True
            self._queue.put_nowait(_Rewrite(future, automatic=True))

    async def _rewrite(self, request: _Rewrite):
        """Replace the journal with one entry per live key"""
        temp_path = journal_temp_path(self.file_path)
        started = time.time()

        try:
            records = self.snapshot_source() if self.snapshot_source else {}
            size = await write_compacted(temp_path, records)

            await self._sync()
            await self._file.close()
            self._file = None
            await aiofiles.os.replace(temp_path, self.file_path)
            self._file = await aiofiles.open(self.file_path, "ab")

        except Exception as e:
            logger.error(f"Journal rewrite failed: {e}")
            self._report("journal-rewrite", e)
            if await aiofiles.os.path.isfile(temp_path):
                await aiofiles.os.remove(temp_path)
            if self._file is None:
                self._file = await aiofiles.open(self.file_path, "ab")
            if not request.future.done():
                request.future.set_exception(
                    PersistenceIOError(f"Journal rewrite failed: {e}")
                )
            return
        finally:
            self._rewrite_pending = False

        self._size = self._base_size = size
        self._pending_writes = 0
        self.stats["rewrites"] += 1
        logger.info(
            f"Journal rewritten: {len(records)} keys, {size} bytes "
            f"in {time.time() - started:.3f}s"
        )
        if not request.future.done():
            request.future.set_result(len(records))

    def _report(self, kind: str, error: Exception):
        if self.on_error is None:
            return
        try:
            self.on_error(kind, error)
        except Exception as e:
            logger.error(f"Error in journal error callback: {e}")

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "size": self._size,
            "base_size": self._base_size,
            "queued": self._queue.qsize(),
            "fsync_policy": self.fsync_policy,
            "rewrite_pending": self._rewrite_pending,
        }

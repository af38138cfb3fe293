"""
Startup recovery: journal, then snapshot, then an empty table.

Recovery never raises and never modifies the journal beyond cutting off a
torn tail. Anything short of a clean journal replay or a fresh start is
reported as degraded in the returned RecoveryResult; rebuilding or moving
aside an unusable journal is left to the caller.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from ..core.table import Record
from ..exceptions import JournalCorruptedError
from .journal import read_journal, truncate_journal
from .snapshot import Snapshotter

logger = logging.getLogger(__name__)


class RecoverySource(Enum):
    """Where the recovered state came from"""

    JOURNAL = "journal"
    SNAPSHOT = "snapshot"
    EMPTY = "empty"


@dataclass
class RecoveryResult:
    source: RecoverySource
    records: Dict[str, Record] = field(default_factory=dict)
    degraded: bool = False
    # The journal no longer matches the recovered state and must be rebuilt
    # before it is opened for appends
    rewrite_journal: bool = False
    # The existing journal is unreadable and is kept aside when rebuilt
    journal_corrupt: bool = False
    journal_entries: int = 0
    discarded_bytes: int = 0
    quarantined_journal: Optional[Path] = None
    errors: List[str] = field(default_factory=list)


async def recover(journal_path: Path, snapshotter: Snapshotter) -> RecoveryResult:
    """
    Rebuild the key table from disk.

    Args:
        journal_path: The append-only journal
        snapshotter: Snapshotter that owns the fallback snapshot

    Returns:
        The recovered records and how they were obtained
    """
    errors: List[str] = []
    journal_failed = False

    try:
        replay = await read_journal(journal_path)
    except JournalCorruptedError as e:
        logger.error(f"Journal is corrupt, falling back to snapshot: {e}")
        errors.append(str(e))
        journal_failed = True
        replay = None
    except Exception as e:
        logger.error(f"Journal could not be read, falling back to snapshot: {e}")
        errors.append(f"Journal unreadable: {e}")
        journal_failed = True
        replay = None

    if replay is not None:
        result = RecoveryResult(
            source=RecoverySource.JOURNAL,
            records=replay.records,
            journal_entries=replay.entries,
            discarded_bytes=replay.discarded_bytes,
        )
        if replay.truncated_tail:
            logger.warning(
                f"Discarded {replay.discarded_bytes} bytes of an incomplete "
                f"trailing journal entry"
            )
            try:
                await truncate_journal(journal_path, replay.valid_bytes)
            except Exception as e:
                logger.error(f"Could not truncate journal tail: {e}")
                result.errors.append(f"Journal truncate failed: {e}")
                result.rewrite_journal = True
        logger.info(
            f"Recovered {len(replay.records)} keys from journal "
            f"({replay.entries} entries)"
        )
        return result

    snapshot_failed = False
    try:
        records = await snapshotter.load()
    except Exception as e:
        logger.error(f"Snapshot could not be loaded: {e}")
        errors.append(f"Snapshot unreadable: {e}")
        snapshot_failed = True
        records = None

    if records is not None:
        logger.info(f"Recovered {len(records)} keys from snapshot")
        return RecoveryResult(
            source=RecoverySource.SNAPSHOT,
            records=records,
            degraded=journal_failed,
            rewrite_journal=True,
            journal_corrupt=journal_failed,
            errors=errors,
        )

    degraded = journal_failed or snapshot_failed
    if degraded:
        logger.error("Journal and snapshot unavailable, starting with an empty store")
    else:
        logger.info("No journal or snapshot found, starting with an empty store")

    return RecoveryResult(
        source=RecoverySource.EMPTY,
        degraded=degraded,
        rewrite_journal=journal_failed,
        journal_corrupt=journal_failed,
        errors=errors,
    )

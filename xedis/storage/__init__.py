"""
Persistence for Xedis
Append-only journal, snapshots and startup recovery
"""

from .journal import (
    JournalWriter,
    JournalReplay,
    encode_entry,
    decode_entry,
    parse_journal,
    rebuild_journal,
)
from .snapshot import Snapshotter
from .recovery import RecoverySource, RecoveryResult, recover

__all__ = [
    'JournalWriter',
    'JournalReplay',
    'encode_entry',
    'decode_entry',
    'parse_journal',
    'rebuild_journal',
    'Snapshotter',
    'RecoverySource',
    'RecoveryResult',
    'recover',
]

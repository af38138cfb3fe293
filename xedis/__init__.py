"""
Xedis: an embeddable, Redis-like key-value store
Append-only journal, snapshots and TTL expiration in a single process.
"""

__version__ = "1.0.0"

from .config import XedisConfig
from .core import XedisStore, DiagnosticEvent, open_store, Record, ExpirationScheduler
from .exceptions import (
    XedisError,
    KeyNotFoundError,
    TypeMismatchError,
    PersistenceIOError,
    JournalCorruptedError,
)
from .storage import RecoverySource

__all__ = [
    'XedisConfig',
    'XedisStore',
    'DiagnosticEvent',
    'open_store',
    'Record',
    'ExpirationScheduler',
    'RecoverySource',
    'XedisError',
    'KeyNotFoundError',
    'TypeMismatchError',
    'PersistenceIOError',
    'JournalCorruptedError',
]

"""
Core Xedis implementation
Key table, expiration scheduling and the command layer.
"""

from .table import MemoryTable, Record
from .ttl import ExpirationScheduler, ExpirationEntry
from .store import XedisStore, DiagnosticEvent, open_store

__all__ = [
    'MemoryTable',
    'Record',
    'ExpirationScheduler',
    'ExpirationEntry',
    'XedisStore',
    'DiagnosticEvent',
    'open_store',
]

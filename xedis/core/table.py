"""
In-memory key table
"""

import fnmatch
import random
import threading
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, List


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch"""
    return int(time.time() * 1000)


@dataclass
class Record:
    """A stored value and its optional absolute expiration (epoch ms)"""

    value: str
    expiration: Optional[int] = None

    def is_expired(self, current_ms: Optional[int] = None) -> bool:
        if self.expiration is None:
            return False
        if current_ms is None:
            current_ms = now_ms()
        return current_ms >= self.expiration

    def remaining_ms(self, current_ms: Optional[int] = None) -> Optional[int]:
        """Milliseconds left before expiry, None for a persistent record"""
        if self.expiration is None:
            return None
        if current_ms is None:
            current_ms = now_ms()
        return max(0, self.expiration - current_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "expiration": self.expiration}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        if not isinstance(data, dict) or not isinstance(data.get("value"), str):
            raise ValueError(f"Invalid record: {data!r}")

        expiration = data.get("expiration")
        if expiration is not None:
            expiration = int(expiration)

        return cls(value=data["value"], expiration=expiration)


class MemoryTable:
    """
    Authoritative key -> Record mapping.

    The table holds no expiry logic of its own: an expired record stays until
    the command layer or the expiration scheduler removes it.
    """

    def __init__(self):
        self.data: Dict[str, Record] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Record]:
        with self._lock:
            return self.data.get(key)

    def put(self, key: str, record: Record) -> None:
        with self._lock:
            self.data[key] = record

    def remove(self, key: str) -> Optional[Record]:
        """Remove a key, returning the record it held"""
        with self._lock:
            return self.data.pop(key, None)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self.data

    def keys(self, pattern: str = "*") -> List[str]:
        with self._lock:
            if pattern == "*":
                return list(self.data.keys())
            return [k for k in self.data.keys() if fnmatch.fnmatchcase(k, pattern)]

    def random_key(self) -> Optional[str]:
        with self._lock:
            if not self.data:
                return None
            return random.choice(list(self.data.keys()))

    def copy(self) -> Dict[str, Record]:
        """Point-in-time shallow copy of the table"""
        with self._lock:
            return dict(self.data)

    def load(self, records: Dict[str, Record]) -> None:
        """Replace the whole table contents"""
        with self._lock:
            self.data = dict(records)

    def clear(self) -> None:
        with self._lock:
            self.data.clear()

    def size(self) -> int:
        with self._lock:
            return len(self.data)

    def __len__(self) -> int:
        return self.size()

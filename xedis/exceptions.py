"""
Exceptions raised by Xedis commands and persistence
"""


class XedisError(Exception):
    """Base exception for Xedis"""

    pass


class KeyNotFoundError(XedisError, KeyError):
    """Raised when a command addresses a key that is not in the store"""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self):
        return f"The key [{self.key}] does not exist."


class TypeMismatchError(XedisError, TypeError):
    """Raised when a numeric command runs against a non-integer value"""

    def __init__(self, key: str, value: str):
        super().__init__(key, value)
        self.key = key
        self.value = value

    def __str__(self):
        return f"Value of key [{self.key}] is not an integer: {self.value!r}"


class PersistenceIOError(XedisError, OSError):
    """Raised when a synchronous journal or snapshot write fails"""

    pass


class JournalCorruptedError(XedisError):
    """Raised when the journal holds a malformed entry before its tail"""

    def __init__(self, message: str, offset: int = 0):
        super().__init__(message)
        self.offset = offset

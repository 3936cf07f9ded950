import threading
from enum import Flag
from typing import Dict


class MethodFlags(Flag):
    NONE = 0
    HAS_DEOBFUSCATED = 1


class DeobfuscationState:
    """
    Per-job registry of the flags set on each method.

    Created empty when a batch job starts and passed to every call; entries
    are only ever added. check_and_set() is atomic so methods may be
    processed from several threads.
    """

    def __init__(self):
        self._flags: Dict[object, MethodFlags] = {}
        self._lock = threading.Lock()

    def check_and_set(self, method, flags: MethodFlags) -> bool:
        """
        Add ``flags`` to ``method``.

        Returns:
            True if all of ``flags`` were already set before the call
        """
        if method is None:
            return False
        with self._lock:
            old_flags = self._flags.get(method, MethodFlags.NONE)
            self._flags[method] = old_flags | flags
        return (old_flags & flags) == flags

    def get_flags(self, method) -> MethodFlags:
        with self._lock:
            return self._flags.get(method, MethodFlags.NONE)

    def has_deobfuscated(self, method) -> bool:
        return bool(self.get_flags(method) & MethodFlags.HAS_DEOBFUSCATED)

    def __len__(self) -> int:
        with self._lock:
            return len(self._flags)

    def __contains__(self, method) -> bool:
        with self._lock:
            return method in self._flags

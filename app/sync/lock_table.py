# app/sync/lock_table.py
# Per-field suppression windows for remote state right after a local edit

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, Optional

DEFAULT_LOCK_WINDOW = 1.2  # seconds


class LocalLockTable:
    """
    Field name -> monotonic time after which remote values may apply again.

    Entries are created by local edits and expire lazily: every read drops
    the entries whose window has passed.
    """

    def __init__(
        self,
        window: float = DEFAULT_LOCK_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self._clock = clock
        self._unlock_at: Dict[str, float] = {}

    def lock(self, keys: Iterable[str]) -> None:
        unlock_at = self._clock() + self.window
        for key in keys:
            self._unlock_at[key] = unlock_at

    def is_locked(self, key: str, now: Optional[float] = None) -> bool:
        unlock_at = self._unlock_at.get(key)
        if unlock_at is None:
            return False
        if now is None:
            now = self._clock()
        if now < unlock_at:
            return True
        del self._unlock_at[key]
        return False

    def clear(self) -> None:
        self._unlock_at.clear()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.is_locked(key)

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for key in list(self._unlock_at) if self.is_locked(key, now))

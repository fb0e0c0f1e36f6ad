from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable


class BoundedSeenSet:
    """Remembers the most recent ``maxlen`` keys, dropping the oldest first."""

    def __init__(self, maxlen: int) -> None:
        self.maxlen = maxlen
        self._seen: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: Hashable) -> bool:
        if key in self._seen:
            self._seen.move_to_end(key)
            return False
        self._seen[key] = None
        while len(self._seen) > self.maxlen:
            self._seen.popitem(last=False)
        return True


class CooldownTable:
    """Per-key suppression window, bounded to ``max_entries``."""

    def __init__(
        self,
        cooldown_seconds: float,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._marks: OrderedDict[Hashable, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._marks)

    def is_cooling(self, key: Hashable) -> bool:
        now = self._clock()
        self._purge(now)
        return key in self._marks

    def mark(self, key: Hashable) -> None:
        now = self._clock()
        self._purge(now)
        self._marks[key] = now
        self._marks.move_to_end(key)
        while len(self._marks) > self.max_entries:
            self._marks.popitem(last=False)

    def try_acquire(self, key: Hashable) -> bool:
        if self.is_cooling(key):
            return False
        self.mark(key)
        return True

    def _purge(self, now: float) -> None:
        cutoff = now - self.cooldown_seconds
        while self._marks:
            first_key = next(iter(self._marks))
            if self._marks[first_key] > cutoff:
                break
            self._marks.popitem(last=False)

"""Keyed cooldown gate and a bounded expiring cache for generation results."""

from __future__ import annotations

from typing import Any, Callable, Generic, TypeVar
import time


T = TypeVar("T")


class CooldownGate:
    """Denies a key again until ``cooldown_s`` has passed since it was last allowed."""

    def __init__(self, *, max_keys: int = 2048, now_fn: Callable[[], float] = time.monotonic) -> None:
        self.max_keys = max(1, int(max_keys))
        self._now = now_fn
        self._until: dict[str, float] = {}

    def allow(self, key: str, cooldown_s: float) -> bool:
        if not key:
            return True
        now = self._now()
        until = self._until.get(key)
        if until is not None and now < until:
            return False
        self._until[key] = now + max(0.0, float(cooldown_s))
        if len(self._until) > self.max_keys:
            self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        for key in [k for k, until in self._until.items() if until <= now]:
            del self._until[key]
        while len(self._until) > self.max_keys:
            # dicts keep insertion order; drop the oldest grant
            del self._until[next(iter(self._until))]

    def clear(self) -> None:
        self._until.clear()

    def size(self) -> int:
        return len(self._until)


class TtlCache(Generic[T]):
    def __init__(self, *, ttl_s: float, max_entries: int = 512, now_fn: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = max(0.0, float(ttl_s))
        self.max_entries = max(1, int(max_entries))
        self._now = now_fn
        self._items: dict[str, tuple[float, T]] = {}

    def get(self, key: str) -> T | None:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._now() >= expires_at:
            del self._items[key]
            return None
        return value

    def __contains__(self, key: Any) -> bool:
        return self.get(str(key)) is not None

    def set(self, key: str, value: T) -> None:
        self._items.pop(key, None)
        self._items[key] = (self._now() + self.ttl_s, value)
        if len(self._items) > self.max_entries:
            now = self._now()
            for stale in [k for k, (exp, _) in self._items.items() if exp <= now]:
                del self._items[stale]
            while len(self._items) > self.max_entries:
                del self._items[next(iter(self._items))]

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

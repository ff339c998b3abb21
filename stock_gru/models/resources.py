"""Explicit bookkeeping for tensors and networks owned by the model wrapper.

PyTorch frees memory when the last reference disappears, which makes leaks
invisible. Every allocation the wrapper makes is registered here and released
when its scope exits, so ``ResourceTracker.live`` can be compared before and
after a call.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ResourceScope:
    """Allocations made during one call; all released when the scope closes."""

    def __init__(self, tracker: "ResourceTracker", name: str) -> None:
        self._tracker = tracker
        self.name = name
        self._held: list[int] = []

    def track(self, resource: T, label: str | None = None) -> T:
        key = self._tracker.acquire(resource, label or self.name)
        self._held.append(key)
        return resource

    def close(self) -> None:
        while self._held:
            self._tracker.release_key(self._held.pop())


class ResourceTracker:
    """Count live numeric resources keyed by identity."""

    def __init__(self) -> None:
        self._live: dict[int, tuple[Any, str]] = {}
        self.acquired_total = 0

    @property
    def live(self) -> int:
        return len(self._live)

    def labels(self) -> list[str]:
        return sorted(label for _, label in self._live.values())

    def acquire(self, resource: Any, label: str) -> int:
        key = id(resource)
        self._live[key] = (resource, label)
        self.acquired_total += 1
        LOGGER.debug("Acquired %s (%s live)", label, self.live)
        return key

    def release(self, resource: Any) -> bool:
        """Forget ``resource``; returns ``False`` if it was not tracked."""

        return self.release_key(id(resource))

    def release_key(self, key: int) -> bool:
        entry = self._live.pop(key, None)
        if entry is None:
            return False
        LOGGER.debug("Released %s (%s live)", entry[1], self.live)
        return True

    def release_all(self) -> int:
        """Forget every live resource and return how many there were."""

        count = self.live
        self._live.clear()
        return count

    @contextmanager
    def scope(self, name: str) -> Iterator[ResourceScope]:
        scope = ResourceScope(self, name)
        try:
            yield scope
        finally:
            scope.close()


__all__ = ["ResourceScope", "ResourceTracker"]

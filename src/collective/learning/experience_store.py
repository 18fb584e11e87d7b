"""
Experience Store — capacity-bounded log of task outcomes.

Insertion is append-mostly under one lock. When the store is full the
experience with the oldest timestamp is evicted. Every ``recognition_interval``
insertions the registered callback is handed a snapshot; it runs after the
insert lock has been released so recognition never blocks ``record``.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from collections.abc import Callable, Iterable

import structlog

from collective.errors import CapacityError, ValidationError
from collective.learning.models import Experience

logger = structlog.get_logger()

IntervalCallback = Callable[[list[Experience]], object]


class ExperienceStore:
    """Bounded in-memory experience log with periodic recognition hook."""

    CAPACITY = 10_000
    RECOGNITION_INTERVAL = 10

    def __init__(
        self,
        capacity: int = CAPACITY,
        recognition_interval: int = RECOGNITION_INTERVAL,
        on_interval: IntervalCallback | None = None,
    ) -> None:
        if capacity <= 0:
            raise CapacityError(f"Experience store capacity must be > 0, got {capacity}")
        if recognition_interval <= 0:
            raise ValueError(f"recognition_interval must be > 0, got {recognition_interval}")

        self.capacity = capacity
        self.recognition_interval = recognition_interval
        self.on_interval = on_interval
        self._items: dict[str, Experience] = {}
        self._by_age: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._insertions = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, experience_id: object) -> bool:
        return experience_id in self._items

    @property
    def insertions(self) -> int:
        return self._insertions

    @property
    def evicted(self) -> int:
        return self._evicted

    def record(self, experience: Experience) -> Experience:
        """
        Append one experience, evicting the oldest when full.

        Raises:
            ValidationError: not an Experience, or its id is already stored
        """
        if not isinstance(experience, Experience):
            raise ValidationError(
                f"expected an Experience, got {experience.__class__.__name__}"
            )

        snapshot: list[Experience] | None = None
        with self._lock:
            if experience.id in self._items:
                raise ValidationError(f"Duplicate experience id: {experience.id}")

            self._insertions += 1
            if len(self._items) >= self.capacity and self._is_oldest(experience):
                # The newcomer predates everything stored, so it is the one dropped.
                self._evicted += 1
                logger.debug("Experience evicted", experience_id=experience.id)
            else:
                if len(self._items) >= self.capacity:
                    self._evict_oldest()
                self._items[experience.id] = experience
                heapq.heappush(
                    self._by_age, (experience.timestamp, next(self._seq), experience.id)
                )

            if self.on_interval is not None and self._insertions % self.recognition_interval == 0:
                snapshot = list(self._items.values())

        if snapshot is not None:
            self.on_interval(snapshot)  # type: ignore[misc]
        return experience

    def record_many(self, experiences: Iterable[Experience]) -> int:
        count = 0
        for experience in experiences:
            self.record(experience)
            count += 1
        return count

    def get(self, experience_id: str) -> Experience | None:
        return self._items.get(experience_id)

    def snapshot(self) -> list[Experience]:
        """Consistent copy of the current contents, oldest first."""
        with self._lock:
            items = list(self._items.values())
        items.sort(key=lambda e: e.timestamp)
        return items

    def query(
        self,
        task_type: str | None = None,
        min_quality: float | None = None,
        agent_types: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Experience]:
        """
        Filter stored experiences, most recent first.

        Args:
            task_type: Exact task type
            min_quality: Minimum quality, inclusive
            agent_types: Every listed agent type must be in the experience's agent_set
            limit: Maximum number of results
        """
        required = frozenset(agent_types or ())
        matches = [
            e
            for e in self.snapshot()
            if (task_type is None or e.task_type == task_type)
            and (min_quality is None or e.quality >= min_quality)
            and required <= e.agent_set
        ]
        matches.reverse()
        return matches[:limit] if limit is not None else matches

    def _evict_oldest(self) -> None:
        # Heap entries for ids no longer stored are skipped.
        while self._by_age:
            _, _, oldest_id = heapq.heappop(self._by_age)
            if self._items.pop(oldest_id, None) is not None:
                self._evicted += 1
                logger.debug("Experience evicted", experience_id=oldest_id)
                return

    def _is_oldest(self, experience: Experience) -> bool:
        while self._by_age and self._by_age[0][2] not in self._items:
            heapq.heappop(self._by_age)
        return bool(self._by_age) and experience.timestamp < self._by_age[0][0]

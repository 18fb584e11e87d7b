"""
Pattern Recognizer — recurring successful agent combinations per task type.

A recognition pass works on a snapshot of the experience store:

1. Deprecate patterns with frequency > 5 and success_rate < 0.3.
2. Group experiences by task_type, skipping groups under ``min_samples``.
3. Within a group, tally each sorted agent combination. The most frequent
   combination with at least ``min_samples`` observations and a success
   rate >= ``confidence_threshold`` becomes (or reinforces) the group's
   pattern, with confidence = combo successes / group size.
4. Other known patterns of the group whose combination shows up in the
   snapshot are reinforced with their observed success rate.

Reinforcement is an exponential moving average (weight 0.1) on success_rate
plus a frequency increment. The new table is built off to the side and
swapped in atomically; readers always see a complete table.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace

import structlog

from collective.learning.models import Experience, Pattern

logger = structlog.get_logger()


@dataclass
class RecognitionResult:
    created: list[str] = field(default_factory=list)
    reinforced: list[str] = field(default_factory=list)
    deprecated: list[str] = field(default_factory=list)
    groups: int = 0
    skipped: bool = False


@dataclass
class _ComboTally:
    total: int = 0
    successes: int = 0
    quality_sum: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0

    @property
    def avg_quality(self) -> float:
        return self.quality_sum / self.total if self.total else 0.0


class PatternRecognizer:
    """Owns the pattern table; rebuilt copy-on-write by recognition passes."""

    MIN_SAMPLES = 3
    CONFIDENCE_THRESHOLD = 0.6
    REINFORCEMENT_WEIGHT = 0.1
    DEPRECATION_FREQUENCY = 5
    DEPRECATION_SUCCESS_RATE = 0.3

    def __init__(
        self,
        min_samples: int = MIN_SAMPLES,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        reinforcement_weight: float = REINFORCEMENT_WEIGHT,
        deprecation_frequency: int = DEPRECATION_FREQUENCY,
        deprecation_success_rate: float = DEPRECATION_SUCCESS_RATE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.min_samples = min_samples
        self.confidence_threshold = confidence_threshold
        self.reinforcement_weight = reinforcement_weight
        self.deprecation_frequency = deprecation_frequency
        self.deprecation_success_rate = deprecation_success_rate
        self._clock = clock
        self._patterns: dict[str, Pattern] = {}
        self._swap_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self.passes = 0

    def __len__(self) -> int:
        return len(self._patterns)

    # -- queries ------------------------------------------------------------

    def find(self, task_type: str, min_confidence: float = 0.0) -> list[Pattern]:
        """Patterns for ``task_type`` at or above ``min_confidence``, best success rate first."""
        found = [
            replace(p)
            for p in self._patterns.values()
            if p.task_type == task_type and p.confidence >= min_confidence
        ]
        found.sort(key=lambda p: (-p.success_rate, p.id))
        return found

    def all(self) -> list[Pattern]:
        patterns = [replace(p) for p in self._patterns.values()]
        patterns.sort(key=lambda p: (p.task_type, -p.success_rate, p.id))
        return patterns

    def get(self, pattern_id: str) -> Pattern | None:
        pattern = self._patterns.get(pattern_id)
        return replace(pattern) if pattern is not None else None

    # -- passes -------------------------------------------------------------

    def recognize(self, experiences: Iterable[Experience]) -> RecognitionResult:
        """
        Run one recognition pass over a snapshot of experiences.

        If another pass is already running this one is skipped and the
        returned result has ``skipped=True``.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Recognition pass already running, skipping")
            return RecognitionResult(skipped=True)

        try:
            result = RecognitionResult()
            table = {pid: replace(p) for pid, p in self._patterns.items()}
            result.deprecated = self._deprecate(table)

            groups: dict[str, list[Experience]] = defaultdict(list)
            for experience in experiences:
                groups[experience.task_type].append(experience)

            now = self._clock()
            for task_type, group in groups.items():
                if len(group) < self.min_samples:
                    continue
                result.groups += 1
                self._recognize_group(task_type, group, table, now, result)

            self._swap(table)
            self.passes += 1

            for pid in result.created:
                logger.info("Pattern created", pattern_id=pid)
            for pid in result.deprecated:
                logger.info("Pattern deprecated", pattern_id=pid)
            logger.debug(
                "Recognition pass complete",
                groups=result.groups,
                created=len(result.created),
                reinforced=len(result.reinforced),
                deprecated=len(result.deprecated),
            )
            return result
        finally:
            self._pass_lock.release()

    def deprecate_weak(self) -> list[str]:
        """Remove weak patterns outside a recognition pass. Returns removed ids."""
        with self._pass_lock:
            table = {pid: replace(p) for pid, p in self._patterns.items()}
            removed = self._deprecate(table)
            if removed:
                self._swap(table)
        for pid in removed:
            logger.info("Pattern deprecated", pattern_id=pid)
        return removed

    def load(self, patterns: Iterable[Pattern]) -> tuple[int, int]:
        """
        Merge patterns into the table.

        Unknown ids are added as-is. Known ids are merged: frequencies add
        and success rates combine weighted by frequency.

        Returns:
            (added, merged)
        """
        added = merged = 0
        with self._pass_lock:
            table = {pid: replace(p) for pid, p in self._patterns.items()}
            for incoming in patterns:
                existing = table.get(incoming.id)
                if existing is None:
                    table[incoming.id] = replace(incoming)
                    added += 1
                    continue
                total = existing.frequency + incoming.frequency
                if total > 0:
                    existing.success_rate = (
                        existing.success_rate * existing.frequency
                        + incoming.success_rate * incoming.frequency
                    ) / total
                existing.frequency = total
                existing.confidence = max(existing.confidence, incoming.confidence)
                existing.last_reinforced = max(existing.last_reinforced, incoming.last_reinforced)
                merged += 1
            self._swap(table)
        return added, merged

    def reinforce(self, pattern: Pattern, observed_rate: float, confidence: float | None = None) -> None:
        """EMA step on success_rate plus a frequency increment, in place."""
        w = self.reinforcement_weight
        pattern.success_rate = min(1.0, max(0.0, (1 - w) * pattern.success_rate + w * observed_rate))
        pattern.frequency += 1
        if confidence is not None:
            pattern.confidence = confidence
        pattern.last_reinforced = self._clock()

    # -- internals ----------------------------------------------------------

    def _recognize_group(
        self,
        task_type: str,
        group: list[Experience],
        table: dict[str, Pattern],
        now: float,
        result: RecognitionResult,
    ) -> None:
        tallies: dict[tuple[str, ...], _ComboTally] = defaultdict(_ComboTally)
        for experience in group:
            tally = tallies[tuple(sorted(experience.agent_set))]
            tally.total += 1
            tally.successes += experience.success
            tally.quality_sum += experience.quality

        candidates = [
            (combo, tally)
            for combo, tally in tallies.items()
            if tally.total >= self.min_samples
            and tally.success_rate >= self.confidence_threshold
        ]
        best: tuple[str, ...] | None = None
        if candidates:
            candidates.sort(key=lambda c: (-c[1].total, -c[1].success_rate, c[0]))
            best, tally = candidates[0]
            pid = Pattern.make_id(task_type, best)
            confidence = tally.successes / len(group)
            existing = table.get(pid)
            if existing is None:
                table[pid] = Pattern(
                    id=pid,
                    task_type=task_type,
                    agent_combo=best,
                    frequency=tally.total,
                    success_rate=tally.success_rate,
                    confidence=confidence,
                    last_reinforced=now,
                    sample_size=tally.total,
                    avg_quality=tally.avg_quality,
                )
                result.created.append(pid)
            else:
                self._reinforce_from(existing, tally, confidence)
                result.reinforced.append(pid)

        for pattern in table.values():
            if pattern.task_type != task_type or pattern.agent_combo == best:
                continue
            tally = tallies.get(tuple(pattern.agent_combo))
            if tally is None:
                continue
            self._reinforce_from(pattern, tally, tally.successes / len(group))
            result.reinforced.append(pattern.id)

    def _reinforce_from(self, pattern: Pattern, tally: _ComboTally, confidence: float) -> None:
        self.reinforce(pattern, tally.success_rate, confidence)
        w = self.reinforcement_weight
        pattern.avg_quality = (1 - w) * pattern.avg_quality + w * tally.avg_quality
        pattern.sample_size = tally.total
        logger.debug(
            "Pattern reinforced",
            pattern_id=pattern.id,
            success_rate=round(pattern.success_rate, 4),
            frequency=pattern.frequency,
        )

    def _deprecate(self, table: dict[str, Pattern]) -> list[str]:
        removed = [
            pid
            for pid, p in table.items()
            if p.frequency > self.deprecation_frequency
            and p.success_rate < self.deprecation_success_rate
        ]
        for pid in removed:
            del table[pid]
        return removed

    def _swap(self, table: dict[str, Pattern]) -> None:
        with self._swap_lock:
            self._patterns = table

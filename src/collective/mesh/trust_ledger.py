"""
Trust Ledger — Directed Agent-to-Agent Trust with Asymmetric Updates

Every ordered agent pair (a, b) carries a score in [0.0, 1.0] describing how
much ``a`` trusts ``b``. Edges are created lazily at the neutral 0.5 on first
interaction and are never deleted.

Update rule:
- Success: score += lr * quality * (1 - score)
- Failure: score -= lr * 1.5 * score

Failure erodes trust faster than success builds it. Decay pulls every score
back toward 0.5: score = 0.5 + (score - 0.5) * (1 - rate).
"""

from __future__ import annotations

import statistics
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from typing import Any

import structlog

from collective.errors import InvalidOperationError, ValidationError
from collective.mesh.models import TrustEdge
from collective.sync import ShardedLock

logger = structlog.get_logger()


class TrustLedger:
    """
    In-memory trust graph with per-edge atomic read-modify-write.

    Writers serialize on a lock stripe chosen by the ordered pair, so updates
    to unrelated pairs do not contend. Reads take no lock and return the last
    committed score.
    """

    NEUTRAL = 0.5
    LEARNING_RATE = 0.1
    FAILURE_MULTIPLIER = 1.5
    DECAY_RATE = 0.01
    HIGH_TRUST = 0.7
    LOW_TRUST = 0.3

    def __init__(
        self,
        learning_rate: float = LEARNING_RATE,
        failure_multiplier: float = FAILURE_MULTIPLIER,
        decay_rate: float = DECAY_RATE,
        clock: Callable[[], float] = time.time,
        shards: int = ShardedLock.DEFAULT_SHARDS,
    ) -> None:
        if not 0.0 < learning_rate <= 1.0:
            raise ValueError(f"learning_rate must be in (0.0, 1.0], got {learning_rate}")
        if failure_multiplier <= 0.0:
            raise ValueError(f"failure_multiplier must be > 0, got {failure_multiplier}")
        if not 0.0 <= decay_rate <= 1.0:
            raise ValueError(f"decay_rate must be in [0.0, 1.0], got {decay_rate}")

        self.learning_rate = learning_rate
        self.failure_multiplier = failure_multiplier
        self.decay_rate = decay_rate
        self._clock = clock
        self._edges: dict[tuple[str, str], TrustEdge] = {}
        self._locks = ShardedLock(shards)
        self._create_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._edges)

    def get(self, a: str, b: str) -> float:
        """Trust of ``a`` toward ``b``; 0.5 when the pair has never interacted."""
        edge = self._edges.get((a, b))
        return edge.score if edge is not None else self.NEUTRAL

    def edge(self, a: str, b: str) -> TrustEdge | None:
        edge = self._edges.get((a, b))
        return replace(edge) if edge is not None else None

    def edges(self) -> list[TrustEdge]:
        """Point-in-time copy of every edge."""
        return [replace(e) for e in list(self._edges.values())]

    def update(self, a: str, b: str, success: bool, quality: float = 1.0) -> float:
        """
        Apply one interaction outcome to the a -> b edge.

        Args:
            a: Trusting agent
            b: Trusted agent
            success: Whether the interaction succeeded
            quality: Outcome quality in [0.0, 1.0], scales the success gain

        Returns:
            The new trust score

        Raises:
            InvalidOperationError: a and b are the same agent
            ValidationError: quality outside [0.0, 1.0]
        """
        if a == b:
            raise InvalidOperationError(f"Self-trust update for agent {a} is not allowed")
        if not 0.0 <= quality <= 1.0:
            raise ValidationError(f"quality must be in [0.0, 1.0], got {quality}")

        key = (a, b)
        with self._locks.for_key(key):
            edge = self._edges.get(key)
            if edge is None:
                edge = self._create(a, b)

            score = edge.score
            if success:
                score += self.learning_rate * quality * (1.0 - score)
                edge.successes += 1
            else:
                score -= self.learning_rate * self.failure_multiplier * score
                edge.failures += 1

            edge.score = min(1.0, max(0.0, score))
            edge.last_updated = self._clock()
            new_score = edge.score

        logger.debug(
            "Trust updated", source=a, target=b, success=success, score=round(new_score, 4)
        )
        return new_score

    def decay_all(self, rate: float | None = None, idle_seconds: float = 0.0) -> int:
        """
        Pull every edge toward neutral.

        Args:
            rate: Decay rate in [0.0, 1.0]; defaults to the ledger's decay_rate
            idle_seconds: Only decay edges not updated for at least this long

        Returns:
            Number of edges decayed
        """
        rate = self.decay_rate if rate is None else rate
        if not 0.0 <= rate <= 1.0:
            raise ValidationError(f"decay rate must be in [0.0, 1.0], got {rate}")

        now = self._clock()
        decayed = 0
        # One view of the graph for the whole sweep; a concurrent load swaps the
        # dict rather than mutating it.
        edges = self._edges
        for key, edge in list(edges.items()):
            with self._locks.for_key(key):
                if idle_seconds and now - edge.last_updated < idle_seconds:
                    continue
                score = self.NEUTRAL + (edge.score - self.NEUTRAL) * (1.0 - rate)
                edge.score = min(1.0, max(0.0, score))
                decayed += 1

        logger.info("Trust decay applied", rate=rate, edges=decayed)
        return decayed

    def load(self, edges: Iterable[TrustEdge]) -> int:
        """Replace the whole graph with ``edges``. Returns the number loaded."""
        fresh = {(e.source, e.target): replace(e) for e in edges}
        with self._create_lock:
            self._edges = fresh
        return len(fresh)

    def top_partners(self, agent: str, limit: int = 5) -> list[TrustEdge]:
        """Edges out of ``agent`` ordered by score, highest first."""
        out = [replace(e) for e in list(self._edges.values()) if e.source == agent]
        out.sort(key=lambda e: (-e.score, e.target))
        return out[:limit]

    def stats(self) -> dict[str, Any]:
        """Aggregate statistics over all existing edges."""
        scores = [e.score for e in list(self._edges.values())]
        if not scores:
            return {
                "edges": 0,
                "average_trust": self.NEUTRAL,
                "min_trust": self.NEUTRAL,
                "max_trust": self.NEUTRAL,
                "trust_variance": 0.0,
                "high_trust_pairs": 0,
                "low_trust_pairs": 0,
                "total_interactions": 0,
            }
        return {
            "edges": len(scores),
            "average_trust": statistics.fmean(scores),
            "min_trust": min(scores),
            "max_trust": max(scores),
            "trust_variance": statistics.pvariance(scores),
            "high_trust_pairs": sum(1 for s in scores if s > self.HIGH_TRUST),
            "low_trust_pairs": sum(1 for s in scores if s < self.LOW_TRUST),
            "total_interactions": sum(e.interactions for e in self.edges()),
        }

    def clusters(self, threshold: float = HIGH_TRUST) -> list[list[str]]:
        """
        Greedy grouping of agents whose mutual trust exceeds ``threshold``.

        Mutual trust is the mean of both directions. Agents are visited in
        sorted order; each unvisited agent seeds a cluster that absorbs every
        other unvisited agent it mutually trusts. Singletons are omitted.
        """
        agents = sorted({a for pair in list(self._edges) for a in pair})
        visited: set[str] = set()
        result: list[list[str]] = []

        for agent in agents:
            if agent in visited:
                continue
            cluster = [agent]
            visited.add(agent)
            for other in agents:
                if other in visited:
                    continue
                mutual = (self.get(agent, other) + self.get(other, agent)) / 2
                if mutual > threshold:
                    cluster.append(other)
                    visited.add(other)
            if len(cluster) > 1:
                result.append(cluster)
        return result

    def _create(self, a: str, b: str) -> TrustEdge:
        # Caller holds the stripe lock for (a, b); the create lock guards the
        # dict itself against a concurrent load().
        with self._create_lock:
            edge = self._edges.get((a, b))
            if edge is None:
                edge = TrustEdge(source=a, target=b, last_updated=self._clock())
                self._edges[(a, b)] = edge
                logger.debug("Trust edge created", source=a, target=b)
        return edge

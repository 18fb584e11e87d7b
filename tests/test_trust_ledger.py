"""Tests for the trust ledger."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from collective.errors import InvalidOperationError, ValidationError
from collective.mesh.models import TrustEdge
from collective.mesh.trust_ledger import TrustLedger


class TestUpdates:
    def test_unknown_pair_is_neutral(self, ledger):
        assert ledger.get("a", "b") == 0.5
        assert len(ledger) == 0

    def test_success_moves_toward_one(self, ledger):
        assert ledger.update("a", "b", True) == pytest.approx(0.55)

    def test_quality_scales_gain(self, ledger):
        assert ledger.update("a", "b", True, quality=0.5) == pytest.approx(0.525)

    def test_failure_erodes_faster(self, ledger):
        assert ledger.update("a", "b", False) == pytest.approx(0.425)

    def test_edges_are_directed(self, ledger):
        ledger.update("a", "b", True)
        assert ledger.get("b", "a") == 0.5
        assert ledger.edge("b", "a") is None

    def test_counters_and_timestamp(self, ledger, clock):
        clock.advance(5)
        ledger.update("a", "b", True)
        ledger.update("a", "b", False)
        edge = ledger.edge("a", "b")
        assert edge.successes == 1
        assert edge.failures == 1
        assert edge.interactions == 2
        assert edge.last_updated == clock.now

    def test_self_update_rejected(self, ledger):
        with pytest.raises(InvalidOperationError):
            ledger.update("a", "a", True)
        assert len(ledger) == 0

    def test_bad_quality_rejected_without_mutation(self, ledger):
        with pytest.raises(ValidationError):
            ledger.update("a", "b", True, quality=1.5)
        assert len(ledger) == 0

    def test_asymmetric_rates(self, ledger):
        gain = ledger.update("a", "b", True) - 0.5
        loss = 0.5 - ledger.update("c", "d", False)
        assert loss > gain

    def test_repeated_success_is_monotonic_and_below_one(self, ledger):
        previous = ledger.get("a", "b")
        for _ in range(100):
            score = ledger.update("a", "b", True)
            assert previous < score < 1.0
            previous = score

    def test_repeated_failure_is_monotonic_and_above_zero(self, ledger):
        previous = ledger.get("a", "b")
        for _ in range(50):
            score = ledger.update("a", "b", False)
            assert 0.0 < score < previous
            previous = score

    def test_concurrent_updates_are_not_lost(self):
        ledger = TrustLedger()

        def hammer(_: int) -> None:
            for _ in range(100):
                ledger.update("a", "b", True, quality=0.5)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(hammer, range(8)))
        assert ledger.edge("a", "b").successes == 800


class TestDecay:
    def test_decay_pulls_toward_neutral(self, ledger):
        ledger.update("a", "b", True)
        ledger.update("c", "d", False)
        assert ledger.decay_all(rate=0.5) == 2
        assert ledger.get("a", "b") == pytest.approx(0.525)
        assert ledger.get("c", "d") == pytest.approx(0.4625)

    def test_default_rate(self, ledger):
        ledger.update("a", "b", True)
        ledger.decay_all()
        assert ledger.get("a", "b") == pytest.approx(0.5 + 0.05 * 0.99)

    def test_idle_filter(self, ledger, clock):
        ledger.update("a", "b", True)
        clock.advance(10)
        assert ledger.decay_all(rate=0.5, idle_seconds=100) == 0
        clock.advance(100)
        assert ledger.decay_all(rate=0.5, idle_seconds=100) == 1

    def test_invalid_rate(self, ledger):
        with pytest.raises(ValidationError):
            ledger.decay_all(rate=1.5)

    def test_load_during_sweep_is_not_fatal(self, ledger, monkeypatch):
        ledger.update("a", "b", True)
        ledger.update("c", "d", True)
        for_key = ledger._locks.for_key
        loaded = []

        def for_key_then_load(key):
            if not loaded:
                loaded.append(ledger.load([TrustEdge(source="x", target="y", score=0.9)]))
            return for_key(key)

        monkeypatch.setattr(ledger._locks, "for_key", for_key_then_load)
        assert ledger.decay_all(rate=0.5) == 2
        assert loaded == [1]
        assert ledger.get("x", "y") == 0.9
        assert ledger.get("a", "b") == 0.5


class TestQueries:
    def test_top_partners(self, ledger):
        ledger.update("a", "b", True)
        ledger.update("a", "c", False)
        ledger.update("a", "d", True)
        ledger.update("a", "d", True)
        assert [e.target for e in ledger.top_partners("a", limit=2)] == ["d", "b"]

    def test_stats_empty(self, ledger):
        stats = ledger.stats()
        assert stats["edges"] == 0
        assert stats["average_trust"] == 0.5

    def test_stats(self, ledger):
        for _ in range(10):
            ledger.update("a", "b", True)
        for _ in range(10):
            ledger.update("b", "c", False)
        stats = ledger.stats()
        assert stats["edges"] == 2
        assert stats["high_trust_pairs"] == 1
        assert stats["low_trust_pairs"] == 1
        assert stats["total_interactions"] == 20

    def test_clusters(self, ledger):
        for _ in range(10):
            ledger.update("a", "b", True)
            ledger.update("b", "a", True)
        ledger.update("a", "c", True)
        assert ledger.clusters() == [["a", "b"]]

    def test_load_replaces_graph(self, ledger):
        ledger.update("x", "y", True)
        ledger.load([TrustEdge(source="a", target="b", score=0.9)])
        assert ledger.get("x", "y") == 0.5
        assert ledger.get("a", "b") == 0.9

    def test_edges_are_copies(self, ledger):
        ledger.update("a", "b", True)
        ledger.edges()[0].score = 0.0
        assert ledger.get("a", "b") == pytest.approx(0.55)

    def test_self_edge_model_rejected(self):
        with pytest.raises(ValidationError):
            TrustEdge(source="a", target="a")


_ops = st.lists(
    st.one_of(
        st.tuples(st.just("update"), st.booleans(), st.floats(min_value=0.0, max_value=1.0)),
        st.tuples(st.just("decay"), st.floats(min_value=0.0, max_value=1.0), st.just(0.0)),
    ),
    max_size=80,
)


@given(ops=_ops)
@settings(max_examples=100)
def test_scores_stay_in_unit_interval(ops):
    ledger = TrustLedger()
    for kind, arg, quality in ops:
        if kind == "update":
            ledger.update("a", "b", arg, quality)
        else:
            ledger.decay_all(rate=arg)
        assert 0.0 <= ledger.get("a", "b") <= 1.0

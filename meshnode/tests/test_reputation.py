# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the peer reputation engine.

Tests score bounds, blending, metric normalization and listeners.
"""

import pytest
from unittest.mock import Mock

from meshnode.mesh.reputation import (
    BehaviorEvent,
    BehaviorMetric,
    DEFAULT_WEIGHTS,
    NEUTRAL_SCORE,
    ReputationEngine,
    normalize_weights,
)


class TestScoreBounds:
    """Scores always stay inside [0, 1]."""

    def test_unknown_peer_scores_neutral(self, reputation):
        """Peers never observed should get the neutral default."""
        assert reputation.get_score("nobody") is None
        assert reputation.get_score_value("nobody") == NEUTRAL_SCORE

    @pytest.mark.parametrize("metric,value", [
        (BehaviorMetric.RELAY_SUCCESS, 50.0),
        (BehaviorMetric.RELAY_SUCCESS, -3.0),
        (BehaviorMetric.LATENCY, -100.0),
        (BehaviorMetric.LATENCY, 1e9),
        (BehaviorMetric.AVAILABILITY, 7.0),
        (BehaviorMetric.FORGERY_ATTEMPT, 1000.0),
        (BehaviorMetric.SYBIL_SIGNAL, -1.0),
    ])
    def test_extreme_observations_stay_bounded(self, reputation, metric, value):
        """Out-of-range observed values must not push a score out of bounds."""
        for _ in range(20):
            score = reputation.record_event(BehaviorEvent("peer", metric, value))
            assert 0.0 <= score.score <= 1.0

    @pytest.mark.parametrize("metric", list(BehaviorMetric))
    def test_huge_observation_does_not_break_peer(self, reputation, metric):
        """A huge value is absorbed and later events still apply."""
        score = reputation.record_event(BehaviorEvent("peer", metric, 1e200))
        assert 0.0 <= score.score <= 1.0

        before = score.score
        after = reputation.record_event(BehaviorEvent("peer", BehaviorMetric.RELAY_SUCCESS, 1.0))

        assert 0.0 <= after.score <= 1.0
        assert reputation.get_stats()["events_processed"] == 2
        assert after.score != before

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
    @pytest.mark.parametrize("metric", list(BehaviorMetric))
    def test_non_finite_observation_dropped(self, reputation, metric, value):
        reputation.record_event(BehaviorEvent("peer", BehaviorMetric.RELAY_SUCCESS, 1.0))
        before = reputation.get_score_value("peer")

        score = reputation.record_event(BehaviorEvent("peer", metric, value))

        assert score.score == before
        assert reputation.get_score_value("peer") == before
        assert reputation.get_stats()["events_rejected"] == 1
        assert reputation.get_stats()["events_processed"] == 1

    def test_non_finite_observation_for_unknown_peer(self, reputation):
        score = reputation.record_event(BehaviorEvent("ghost", BehaviorMetric.LATENCY, float("nan")))

        assert score.score == NEUTRAL_SCORE
        assert reputation.get_score("ghost") is None

    def test_record_event_returns_copy(self, reputation):
        """Mutating the returned score must not change the stored one."""
        score = reputation.record_event(BehaviorEvent("peer", BehaviorMetric.RELAY_SUCCESS, 1.0))
        score.score = 0.0

        assert reputation.get_score_value("peer") > 0.0


class TestBlending:
    """Tests for the decay blend applied on every recalculation."""

    def test_single_event_moves_at_most_alpha(self, reputation):
        """One report can move a score by at most alpha of the distance to raw."""
        score = reputation.record_event(BehaviorEvent("peer", BehaviorMetric.FORGERY_ATTEMPT, 100.0))

        assert score.score >= NEUTRAL_SCORE * (1 - reputation.decay_factor)

    def test_forgery_drops_below_blacklist_within_five_events(self, reputation):
        """Five forgery reports should push a fresh peer below 0.10."""
        scores = []
        for _ in range(5):
            scores.append(
                reputation.record_event(
                    BehaviorEvent("forger", BehaviorMetric.FORGERY_ATTEMPT, 1.0)
                ).score
            )

        assert scores == sorted(scores, reverse=True)
        assert scores[-1] < 0.10
        assert scores[-1] == pytest.approx(0.0911, abs=1e-3)
        assert reputation.is_blacklisted("forger", 0.10)

    def test_relay_successes_raise_score_monotonically(self, reputation):
        """Consecutive successful relays should never lower a score."""
        previous = NEUTRAL_SCORE
        for _ in range(10):
            current = reputation.record_event(
                BehaviorEvent("relay", BehaviorMetric.RELAY_SUCCESS, 1.0)
            ).score
            assert current >= previous
            previous = current

        assert previous > 0.75

    def test_relay_failures_lower_score(self, reputation):
        for _ in range(5):
            reputation.record_event(BehaviorEvent("flaky", BehaviorMetric.RELAY_SUCCESS, 0.0))

        assert reputation.get_score_value("flaky") < NEUTRAL_SCORE

    def test_unobserved_metrics_do_not_drag_score(self, reputation):
        """A peer with only clean relay history should not be pulled to 0.5 by missing metrics."""
        for _ in range(20):
            reputation.record_event(BehaviorEvent("clean", BehaviorMetric.RELAY_SUCCESS, 1.0))

        assert reputation.get_score_value("clean") > 0.9


class TestMetricNormalization:
    """Tests for individual metric contributions."""

    def test_high_latency_scores_below_low_latency(self, reputation):
        for _ in range(5):
            reputation.record_event(BehaviorEvent("fast", BehaviorMetric.LATENCY, 20.0))
            reputation.record_event(BehaviorEvent("slow", BehaviorMetric.LATENCY, 900.0))

        assert reputation.get_score_value("fast") > reputation.get_score_value("slow")

    def test_latency_is_tracked_on_score(self, reputation):
        reputation.record_event(BehaviorEvent("peer", BehaviorMetric.LATENCY, 250.0))

        assert reputation.get_score("peer").latency_ms == pytest.approx(250.0)

    def test_latency_penalty_only_affects_score(self, reputation):
        for _ in range(3):
            reputation.record_event(BehaviorEvent("peer", BehaviorMetric.LATENCY, 600.0))
        before = reputation.get_score_value("peer")

        score = reputation.record_latency_penalty("peer")

        assert score.score < before
        assert score.latency_ms == pytest.approx(600.0)
        assert score.latency_samples == 3

    def test_availability_drop_lowers_score(self, reputation):
        reputation.record_event(BehaviorEvent("up", BehaviorMetric.AVAILABILITY, 1.0))
        reputation.record_event(BehaviorEvent("down", BehaviorMetric.AVAILABILITY, 0.0))

        assert reputation.get_score_value("up") > NEUTRAL_SCORE
        assert reputation.get_score_value("down") < NEUTRAL_SCORE

    def test_sybil_signal_lowers_score(self, reputation):
        for _ in range(3):
            reputation.record_event(BehaviorEvent("sybil", BehaviorMetric.SYBIL_SIGNAL, 1.0))

        assert reputation.get_score_value("sybil") < 0.25


class TestWeights:
    """Tests for weight normalization."""

    def test_default_weights_sum_to_one(self):
        assert sum(DEFAULT_WEIGHTS.values()) == pytest.approx(1.0)

    def test_weights_are_rescaled(self):
        weights = normalize_weights({
            BehaviorMetric.RELAY_SUCCESS: 2.0,
            BehaviorMetric.LATENCY: 2.0,
        })

        assert weights[BehaviorMetric.RELAY_SUCCESS] == pytest.approx(0.5)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_zero_weights_fall_back_to_defaults(self):
        weights = normalize_weights({BehaviorMetric.LATENCY: 0.0, BehaviorMetric.RELAY_SUCCESS: -1.0})

        assert weights == DEFAULT_WEIGHTS

    def test_set_weights_keeps_sum(self, reputation):
        reputation.set_weights({BehaviorMetric.FORGERY_ATTEMPT: 3.0, BehaviorMetric.SYBIL_SIGNAL: 1.0})

        assert sum(reputation.weights.values()) == pytest.approx(1.0)

    def test_out_of_range_decay_is_clamped(self):
        engine = ReputationEngine(node_id="n", decay_factor=5.0)

        assert engine.decay_factor == 1.0


class TestQueries:
    """Tests for score queries and listeners."""

    def test_listener_receives_updates(self, reputation):
        listener = Mock()
        reputation.on_score_updated(listener)

        reputation.record_event(BehaviorEvent("peer", BehaviorMetric.RELAY_SUCCESS, 1.0))

        listener.assert_called_once()
        assert listener.call_args[0][0].peer_id == "peer"

    def test_failing_listener_does_not_break_recording(self, reputation):
        reputation.on_score_updated(Mock(side_effect=RuntimeError("boom")))

        score = reputation.record_event(BehaviorEvent("peer", BehaviorMetric.RELAY_SUCCESS, 1.0))

        assert score.score > NEUTRAL_SCORE

    def test_top_and_worst(self, reputation):
        for _ in range(3):
            reputation.record_event(BehaviorEvent("good", BehaviorMetric.RELAY_SUCCESS, 1.0))
            reputation.record_event(BehaviorEvent("bad", BehaviorMetric.RELAY_SUCCESS, 0.0))

        ranked = reputation.get_top_and_worst(count=1)

        assert ranked["best"][0].peer_id == "good"
        assert ranked["worst"][0].peer_id == "bad"

    def test_stats(self, reputation):
        reputation.record_event(BehaviorEvent("a", BehaviorMetric.RELAY_SUCCESS, 1.0))
        reputation.record_event(BehaviorEvent("b", BehaviorMetric.RELAY_SUCCESS, 1.0))

        stats = reputation.get_stats()

        assert stats["events_processed"] == 2
        assert stats["peers_tracked"] == 2

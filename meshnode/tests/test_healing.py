# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the auto-healing monitor.

Tests churn measurement, soft and aggressive healing, and slow peer
penalties.
"""

import time

import pytest
from unittest.mock import Mock

from meshnode.mesh.healing import HealingMonitor, HealState
from meshnode.mesh.reputation import BehaviorEvent, BehaviorMetric


@pytest.fixture
def mock_router():
    router = Mock()
    router.slow_peers = set()
    router.force_recalculation = Mock(return_value=0)
    return router


@pytest.fixture
def monitor(mock_transport, reputation, mock_router):
    return HealingMonitor(
        transport=mock_transport,
        reputation=reputation,
        router=mock_router,
        churn_threshold=0.20,
        interval=0.1,
        slow_latency_ms=500.0,
        slow_score_floor=0.10,
    )


class TestChurnDetection:
    """Tests for the per-cycle churn calculation."""

    def test_no_drops_takes_no_action(self, monitor, mock_transport, mock_router):
        report = monitor.run_cycle()

        assert report.action == HealState.NO_ACTION
        assert report.churn_rate == 0.0
        mock_transport.try_reconnect.assert_not_called()
        mock_router.force_recalculation.assert_not_called()
        assert monitor.state == HealState.IDLE

    def test_low_churn_soft_heals(self, monitor, mock_transport, mock_router):
        """One drop out of six peers is below the 20% threshold."""
        mock_transport.connected_peers.return_value = ["n2", "n3", "n4", "n5", "n6"]
        monitor.handle_peer_disconnected("n7")

        report = monitor.run_cycle()

        assert report.churn_rate == pytest.approx(1 / 6)
        assert report.action == HealState.SOFT_HEAL
        mock_transport.try_reconnect.assert_called_once_with("n7")
        assert report.reconnected == ["n7"]
        mock_router.force_recalculation.assert_not_called()

    def test_high_churn_heals_aggressively(self, monitor, mock_transport, mock_router):
        """Two drops out of five peers is 40% churn."""
        mock_transport.connected_peers.return_value = ["n2", "n3", "n4"]
        mock_transport.discover_peers.return_value = 3
        monitor.handle_peer_disconnected("n5")
        monitor.handle_peer_disconnected("n6")

        report = monitor.run_cycle()

        assert report.churn_rate == pytest.approx(0.4)
        assert report.action == HealState.AGGRESSIVE_HEAL
        mock_router.force_recalculation.assert_called_once()
        mock_transport.discover_peers.assert_called_once_with(4)
        assert report.discovered == 3

    def test_churn_at_threshold_is_aggressive(self, monitor, mock_transport):
        mock_transport.connected_peers.return_value = ["n2", "n3", "n4", "n5"]
        monitor.handle_peer_disconnected("n6")

        assert monitor.run_cycle().action == HealState.AGGRESSIVE_HEAL

    def test_reconnected_peer_is_not_counted(self, monitor, mock_transport):
        monitor.handle_peer_disconnected("node-002")
        monitor.handle_peer_connected("node-002")

        assert monitor.run_cycle().action == HealState.NO_ACTION

    def test_drops_reset_each_cycle(self, monitor, mock_transport):
        mock_transport.connected_peers.return_value = ["n2"]
        monitor.handle_peer_disconnected("n3")
        monitor.run_cycle()

        assert monitor.run_cycle().action == HealState.NO_ACTION

    def test_disconnect_lowers_availability(self, monitor, reputation):
        monitor.handle_peer_disconnected("node-002")

        assert reputation.get_score_value("node-002") < 0.5

    def test_failed_reconnect_keeps_peer_dropped(self, monitor, mock_transport):
        mock_transport.connected_peers.return_value = ["n2", "n3", "n4", "n5", "n6"]
        mock_transport.try_reconnect.side_effect = OSError("no route")
        monitor.handle_peer_disconnected("n7")

        report = monitor.run_cycle()

        assert report.reconnected == []
        assert monitor.dropped_peers == ["n7"]


class TestSlowPeers:
    """Tests for latency penalties."""

    def test_slow_peer_penalized_and_marked(self, monitor, reputation, mock_router):
        """A peer that stays slow loses score and is marked slow in the router."""
        for _ in range(15):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))
        before = reputation.get_score_value("node-002")

        report = monitor.run_cycle()

        assert report.slow_peers == ["node-002"]
        assert reputation.get_score_value("node-002") < before
        mock_router.mark_slow.assert_called_once_with("node-002")
        assert monitor.stats["slow_penalties"] == 1

    def test_penalty_leaves_measured_latency(self, monitor, reputation):
        for _ in range(15):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))

        monitor.run_cycle()

        score = reputation.get_score("node-002")
        assert score.latency_ms == pytest.approx(800.0, abs=1.0)
        assert score.latency_samples == 15

    def test_no_repeat_penalty_without_new_samples(self, monitor, reputation):
        """A peer slow once is not penalized every cycle on stale measurements."""
        for _ in range(15):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))
        monitor.run_cycle()
        after_first = reputation.get_score_value("node-002")

        for _ in range(5):
            assert monitor.run_cycle().slow_peers == []

        assert monitor.stats["slow_penalties"] == 1
        assert reputation.get_score_value("node-002") == pytest.approx(after_first)

    def test_fresh_slow_samples_penalized_again(self, monitor, reputation):
        for _ in range(15):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))
        monitor.run_cycle()

        reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))
        report = monitor.run_cycle()

        assert report.slow_peers == ["node-002"]
        assert monitor.stats["slow_penalties"] == 2

    def test_peer_recovers_when_samples_drop(self, monitor, reputation, mock_router):
        for _ in range(15):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))
        monitor.run_cycle()
        penalized = reputation.get_score_value("node-002")
        mock_router.slow_peers = {"node-002"}

        for _ in range(10):
            reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 50.0))
        report = monitor.run_cycle()

        assert report.slow_peers == []
        mock_router.clear_slow.assert_called_once_with("node-002")
        assert reputation.get_score("node-002").latency_ms < 500.0
        assert reputation.get_score_value("node-002") > penalized
        assert monitor.stats["slow_penalties"] == 1

    def test_peer_at_score_floor_left_alone(self, mock_transport, reputation, mock_router):
        monitor = HealingMonitor(mock_transport, reputation, mock_router, slow_score_floor=0.6)
        reputation.record_event(BehaviorEvent("node-002", BehaviorMetric.LATENCY, 800.0))

        report = monitor.run_cycle()

        assert report.slow_peers == []
        mock_router.mark_slow.assert_not_called()

    def test_recovered_peer_cleared(self, monitor, reputation, mock_router):
        mock_router.slow_peers = {"node-003"}
        reputation.record_event(BehaviorEvent("node-003", BehaviorMetric.LATENCY, 50.0))

        monitor.run_cycle()

        mock_router.clear_slow.assert_called_once_with("node-003")


class TestLifecycle:
    """Tests for the periodic thread and reporting."""

    def test_report_callback(self, monitor):
        callback = Mock()
        monitor.on_report(callback)

        report = monitor.run_cycle()

        callback.assert_called_once_with(report)
        assert monitor.get_status()["last_action"] == "no_action"

    def test_background_cycles(self, monitor):
        monitor.start()
        time.sleep(0.35)
        monitor.stop()

        assert monitor.stats["cycles"] >= 1

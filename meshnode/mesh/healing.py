# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Churn-driven auto-healing monitor for the meshnode relay core.

Once per health-check interval the monitor looks at how many peers dropped
since the last cycle and reacts:

    Idle -> Observing -> {NoAction | SoftHeal | AggressiveHeal} -> Idle

    churn = dropped / (connected + dropped)

- churn < threshold with drops: SoftHeal, try to reconnect each dropped peer
- churn >= threshold: AggressiveHeal, force route recalculation and ask the
  transport for at least twice as many replacement peers as were lost

Independently of churn, connected peers whose measured latency stays above
the slow threshold while their score is still above the floor get a latency
penalty and are marked slow in the router. A peer is penalized again only
after fresh latency samples confirm it is still slow.

The monitor only degrades or improves route quality; nothing it does (or
fails to do) affects loop prevention or queue ordering.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, TYPE_CHECKING

from .reputation import BehaviorEvent, BehaviorMetric

if TYPE_CHECKING:
    from .reputation import ReputationEngine
    from .routing import MultiPathRouter
    from .transport import Transport

logger = logging.getLogger(__name__)


DEFAULT_CHURN_THRESHOLD = 0.20
DEFAULT_HEALTH_CHECK_INTERVAL = 10.0
DEFAULT_SLOW_LATENCY_MS = 500.0
DEFAULT_SLOW_SCORE_FLOOR = 0.10


class HealState(Enum):
    """Monitor states within one cycle."""
    IDLE = "idle"
    OBSERVING = "observing"
    NO_ACTION = "no_action"
    SOFT_HEAL = "soft_heal"
    AGGRESSIVE_HEAL = "aggressive_heal"


@dataclass
class HealingReport:
    """What one monitoring cycle saw and did."""
    action: HealState
    connected: int
    dropped: List[str]
    churn_rate: float
    reconnected: List[str] = field(default_factory=list)
    discovered: int = 0
    slow_peers: List[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


class HealingMonitor:
    """
    Periodic mesh health monitor.

    Attributes:
        churn_threshold: Churn rate at which healing turns aggressive
        interval: Seconds between cycles
        slow_latency_ms: Latency above which a peer counts as slow
        slow_score_floor: Peers at or below this score are left alone
        state: Current HealState
        last_report: Report of the most recent cycle
    """

    def __init__(
        self,
        transport: "Transport",
        reputation: "ReputationEngine",
        router: "MultiPathRouter",
        churn_threshold: float = DEFAULT_CHURN_THRESHOLD,
        interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        slow_latency_ms: float = DEFAULT_SLOW_LATENCY_MS,
        slow_score_floor: float = DEFAULT_SLOW_SCORE_FLOOR
    ):
        self.transport = transport
        self.reputation = reputation
        self.router = router
        self.churn_threshold = churn_threshold
        self.interval = max(0.1, interval)
        self.slow_latency_ms = slow_latency_ms
        self.slow_score_floor = slow_score_floor

        self.state = HealState.IDLE
        self.last_report: Optional[HealingReport] = None

        self._dropped: Set[str] = set()
        self._penalized_at: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._on_report: Optional[Callable[[HealingReport], None]] = None

        self.stats = {
            "cycles": 0,
            "soft_heals": 0,
            "aggressive_heals": 0,
            "slow_penalties": 0,
        }

        logger.info(
            f"HealingMonitor initialized: churn_threshold={churn_threshold}, "
            f"interval={self.interval}s"
        )

    # =========================================================================
    # Transport events
    # =========================================================================

    def handle_peer_connected(self, peer_id: str) -> None:
        with self._lock:
            self._dropped.discard(peer_id)
        self.reputation.record_event(BehaviorEvent(peer_id, BehaviorMetric.AVAILABILITY, 1.0))

    def handle_peer_disconnected(self, peer_id: str) -> None:
        with self._lock:
            self._dropped.add(peer_id)
        self.reputation.record_event(BehaviorEvent(peer_id, BehaviorMetric.AVAILABILITY, 0.0))
        logger.info(f"Peer {peer_id} dropped")

    @property
    def dropped_peers(self) -> List[str]:
        with self._lock:
            return sorted(self._dropped)

    def on_report(self, callback: Callable[[HealingReport], None]) -> None:
        """Set callback invoked with every cycle's report."""
        self._on_report = callback

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self) -> HealingReport:
        """Observe the peer set once and take the matching heal action."""
        self.state = HealState.OBSERVING
        connected = self.transport.connected_peers()
        with self._lock:
            dropped = sorted(self._dropped - set(connected))
            self._dropped.clear()

        total = len(connected) + len(dropped)
        churn = len(dropped) / total if total else 0.0
        logger.debug(f"Health check: {len(connected)} connected, churn {churn:.0%}")

        report = HealingReport(
            action=HealState.NO_ACTION,
            connected=len(connected),
            dropped=dropped,
            churn_rate=churn,
        )

        if dropped and churn >= self.churn_threshold:
            report.action = HealState.AGGRESSIVE_HEAL
            self.state = HealState.AGGRESSIVE_HEAL
            self._aggressive_heal(report)
        elif dropped:
            report.action = HealState.SOFT_HEAL
            self.state = HealState.SOFT_HEAL
            self._soft_heal(report)
        else:
            self.state = HealState.NO_ACTION

        report.slow_peers = self._check_slow_peers(self.transport.connected_peers())

        self.stats["cycles"] += 1
        self.last_report = report
        self.state = HealState.IDLE

        if self._on_report:
            try:
                self._on_report(report)
            except Exception as e:
                logger.error(f"Healing report callback failed: {e}")
        return report

    def _soft_heal(self, report: HealingReport) -> None:
        logger.info(f"Churn {report.churn_rate:.0%} below threshold, soft healing")
        self.stats["soft_heals"] += 1
        for peer_id in report.dropped:
            logger.debug(f"Trying to reconnect to {peer_id}")
            try:
                if self.transport.try_reconnect(peer_id):
                    report.reconnected.append(peer_id)
            except Exception as e:
                logger.error(f"Reconnect to {peer_id} failed: {e}")
                with self._lock:
                    self._dropped.add(peer_id)

    def _aggressive_heal(self, report: HealingReport) -> None:
        logger.warning(
            f"CHURN ALERT: {report.churn_rate:.0%} of peers dropped "
            f"(threshold {self.churn_threshold:.0%}), healing aggressively"
        )
        self.stats["aggressive_heals"] += 1
        self.router.force_recalculation()
        try:
            report.discovered = self.transport.discover_peers(2 * len(report.dropped))
        except Exception as e:
            logger.error(f"Peer discovery failed: {e}")

    def _check_slow_peers(self, connected: List[str]) -> List[str]:
        """Penalize peers whose measured latency stays above the threshold."""
        slow = []
        for peer_id in connected:
            score = self.reputation.get_score(peer_id)
            if score is None:
                continue
            if score.latency_ms <= self.slow_latency_ms:
                self._penalized_at.pop(peer_id, None)
                if peer_id in self.router.slow_peers:
                    self.router.clear_slow(peer_id)
                continue
            if score.score <= self.slow_score_floor:
                continue
            # one penalty per batch of fresh measurements
            if score.latency_samples <= self._penalized_at.get(peer_id, 0):
                continue

            logger.warning(
                f"Peer {peer_id} is slow ({score.latency_ms:.0f}ms), lowering its score"
            )
            self.reputation.record_latency_penalty(peer_id)
            self._penalized_at[peer_id] = score.latency_samples
            self.router.mark_slow(peer_id)
            self.stats["slow_penalties"] += 1
            slow.append(peer_id)
        return slow

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the periodic monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._monitor_loop, daemon=True, name="healing-monitor")
        self._thread.start()
        logger.info(f"Healing monitor started (interval {self.interval}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1.0)
            self._thread = None
        logger.info("Healing monitor stopped")

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Healing cycle error: {e}")
                self.state = HealState.IDLE

    def get_status(self) -> dict:
        report = self.last_report
        return {
            "state": self.state.value,
            "dropped_pending": self.dropped_peers,
            "last_churn_rate": round(report.churn_rate, 3) if report else None,
            "last_action": report.action.value if report else None,
            "stats": self.stats.copy(),
        }

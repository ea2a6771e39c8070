# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Peer reputation engine for the meshnode relay core.

Tracks observed peer behaviour and turns it into a bounded trust score
that the router, dispatcher and healing monitor consult.

Each BehaviorEvent updates a per-peer aggregate for one metric:
- relay success rate (observed value 1.0 = relayed, 0.0 = failed)
- latency/jitter (observed value in milliseconds)
- availability (1.0 = peer seen up, 0.0 = peer dropped)
- forgery attempts (observed value = number of forged packets, 0 = clean)
- sybil detection confidence (0.0 = not a sybil, 1.0 = certainly a sybil)

Every aggregate is normalized to [0, 1] and the normalized values are
combined with weights that always sum to 1. Metrics never observed for a
peer do not contribute; the weights of the observed metrics are rescaled.
Once a peer has been seen forging, the raw result never exceeds its
normalized forgery value. The raw result is blended into the previous score:

    score = old * (1 - alpha) + raw * alpha

so no single report can move a peer by more than alpha of the distance
to the raw value. Unknown peers score a neutral 0.5.

Score range: 0.0 (never trusted) to 1.0 (fully trusted)
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


NEUTRAL_SCORE = 0.5
MIN_SCORE = 0.0
MAX_SCORE = 1.0
DEFAULT_DECAY_FACTOR = 0.4
DEFAULT_LATENCY_CEILING_MS = 1000.0
SAMPLE_SMOOTHING = 0.3  # EWMA weight of a new latency/availability/sybil sample
MAX_LATENCY_SAMPLE_MS = 3_600_000.0
MAX_FORGERY_COUNT = 1000


class BehaviorMetric(Enum):
    """Metrics that feed the reputation score."""
    RELAY_SUCCESS = "relay_success"
    LATENCY = "latency"
    AVAILABILITY = "availability"
    FORGERY_ATTEMPT = "forgery_attempt"
    SYBIL_SIGNAL = "sybil_signal"


DEFAULT_WEIGHTS: Dict[BehaviorMetric, float] = {
    BehaviorMetric.RELAY_SUCCESS: 0.30,
    BehaviorMetric.LATENCY: 0.15,
    BehaviorMetric.AVAILABILITY: 0.20,
    BehaviorMetric.FORGERY_ATTEMPT: 0.20,
    BehaviorMetric.SYBIL_SIGNAL: 0.15,
}


@dataclass(frozen=True)
class BehaviorEvent:
    """An immutable observation about one interaction with a peer."""
    peer_id: str
    metric: BehaviorMetric
    observed_value: float = 1.0


@dataclass
class ReputationScore:
    """Current trust score for one peer."""
    peer_id: str
    score: float = NEUTRAL_SCORE
    last_updated: float = field(default_factory=time.time)
    latency_ms: float = 0.0
    latency_samples: int = 0

    def to_dict(self) -> Dict[str, float]:
        return {
            "peer_id": self.peer_id,
            "score": round(self.score, 4),
            "last_updated": self.last_updated,
            "latency_ms": round(self.latency_ms, 1),
            "latency_samples": self.latency_samples,
        }


@dataclass
class _PeerMetrics:
    """Running aggregates for one peer."""
    relay_attempts: float = 0.0
    relay_successes: float = 0.0
    latency_ewma: Optional[float] = None
    jitter_ewma: float = 0.0
    measured_latency_ewma: Optional[float] = None
    latency_samples: int = 0
    availability_ewma: Optional[float] = None
    forgery_observations: int = 0
    forgery_count: int = 0
    sybil_ewma: Optional[float] = None


def _clamp(value: float, low: float = MIN_SCORE, high: float = MAX_SCORE) -> float:
    return max(low, min(high, value))


def normalize_weights(weights: Optional[Dict[BehaviorMetric, float]]) -> Dict[BehaviorMetric, float]:
    """
    Rescale a weight map so it sums to 1.

    Negative weights are treated as zero. An empty or all-zero map falls
    back to DEFAULT_WEIGHTS.
    """
    if not weights:
        return dict(DEFAULT_WEIGHTS)

    cleaned = {metric: max(0.0, float(weight)) for metric, weight in weights.items()}
    total = sum(cleaned.values())
    if total <= 0:
        logger.warning("Reputation weights sum to zero, using defaults")
        return dict(DEFAULT_WEIGHTS)

    return {metric: weight / total for metric, weight in cleaned.items()}


class ReputationEngine:
    """
    Owns every ReputationScore known to this node.

    All mutation happens inside record_event() and record_latency_penalty()
    under a short lock scoped to a single peer update; readers get copies so
    callers can never alter the stored score.

    Attributes:
        node_id: This node's identifier
        decay_factor: Blend factor alpha applied on every recalculation
        latency_ceiling_ms: Latency at (or above) which the latency metric is 0
        stats: Counters for events processed or rejected and peers tracked
    """

    def __init__(
        self,
        node_id: str,
        decay_factor: float = DEFAULT_DECAY_FACTOR,
        weights: Optional[Dict[BehaviorMetric, float]] = None,
        latency_ceiling_ms: float = DEFAULT_LATENCY_CEILING_MS
    ):
        self.node_id = node_id
        if not 0.0 < decay_factor <= 1.0:
            logger.warning(f"decay_factor {decay_factor} out of range, clamping")
            decay_factor = _clamp(decay_factor, 0.01, 1.0)
        self.decay_factor = decay_factor
        self.latency_ceiling_ms = max(1.0, latency_ceiling_ms)
        self._weights = normalize_weights(weights)

        self._scores: Dict[str, ReputationScore] = {}
        self._metrics: Dict[str, _PeerMetrics] = {}
        self._listeners: List[Callable[[ReputationScore], None]] = []
        self._lock = threading.Lock()

        self.stats = {
            "events_processed": 0,
            "events_rejected": 0,
            "peers_tracked": 0,
        }

        logger.info(
            f"ReputationEngine initialized: node_id={node_id}, "
            f"decay_factor={self.decay_factor}"
        )

    # =========================================================================
    # Weights
    # =========================================================================

    @property
    def weights(self) -> Dict[BehaviorMetric, float]:
        return dict(self._weights)

    def set_weights(self, weights: Dict[BehaviorMetric, float]) -> None:
        """Replace the metric weights (rescaled to sum to 1)."""
        normalized = normalize_weights(weights)
        with self._lock:
            self._weights = normalized
        logger.info(
            "Reputation weights updated: "
            + ", ".join(f"{m.value}={w:.2f}" for m, w in normalized.items())
        )

    # =========================================================================
    # Events
    # =========================================================================

    def record_event(self, event: BehaviorEvent) -> ReputationScore:
        """
        Apply one behaviour observation and recalculate the peer's score.

        Args:
            event: The observation to apply

        Returns:
            A copy of the peer's updated ReputationScore. Events whose value
            is not a finite number are dropped and leave the score unchanged.
        """
        return self._record(event, penalty=False)

    def record_latency_penalty(self, peer_id: str) -> ReputationScore:
        """
        Lower a peer's latency metric as if it answered at the latency ceiling.

        The penalty only enters the score. The measured latency on the
        ReputationScore and its sample count are left alone.
        """
        event = BehaviorEvent(peer_id, BehaviorMetric.LATENCY, self.latency_ceiling_ms)
        return self._record(event, penalty=True)

    def _record(self, event: BehaviorEvent, penalty: bool) -> ReputationScore:
        try:
            value = float(event.observed_value)
        except (TypeError, ValueError):
            value = math.nan

        if not math.isfinite(value):
            with self._lock:
                self.stats["events_rejected"] += 1
                current = self._scores.get(event.peer_id)
                snapshot = replace(current) if current else ReputationScore(peer_id=event.peer_id)
            logger.warning(
                f"Dropped {event.metric.value} event for {event.peer_id}: "
                f"value {event.observed_value!r} is not a finite number"
            )
            return snapshot

        with self._lock:
            current = self._scores.get(event.peer_id)
            if current is None:
                current = ReputationScore(peer_id=event.peer_id)
                self._scores[event.peer_id] = current
                self._metrics[event.peer_id] = _PeerMetrics()
                self.stats["peers_tracked"] += 1

            metrics = self._metrics[event.peer_id]
            self._apply_observation(metrics, event.metric, value, penalty)

            raw = self._raw_score(metrics)
            old = current.score
            current.score = _clamp(old * (1.0 - self.decay_factor) + raw * self.decay_factor)
            current.last_updated = time.time()
            if metrics.measured_latency_ewma is not None:
                current.latency_ms = metrics.measured_latency_ewma
            current.latency_samples = metrics.latency_samples

            self.stats["events_processed"] += 1
            snapshot = replace(current)
            listeners = list(self._listeners)

        logger.debug(
            f"Event {event.metric.value}={event.observed_value} for {event.peer_id}: "
            f"score {old:.4f} -> {snapshot.score:.4f} (raw={raw:.4f})"
        )

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Score listener failed for {event.peer_id}: {e}")

        return snapshot

    def _apply_observation(
        self,
        metrics: _PeerMetrics,
        metric: BehaviorMetric,
        value: float,
        penalty: bool
    ) -> None:
        if metric == BehaviorMetric.RELAY_SUCCESS:
            metrics.relay_attempts += 1
            metrics.relay_successes += _clamp(value)

        elif metric == BehaviorMetric.LATENCY:
            sample = _clamp(value, 0.0, MAX_LATENCY_SAMPLE_MS)
            if metrics.latency_ewma is None:
                metrics.latency_ewma = sample
            else:
                deviation = abs(sample - metrics.latency_ewma)
                metrics.jitter_ewma += SAMPLE_SMOOTHING * (deviation - metrics.jitter_ewma)
                metrics.latency_ewma += SAMPLE_SMOOTHING * (sample - metrics.latency_ewma)
            if not penalty:
                metrics.latency_samples += 1
                if metrics.measured_latency_ewma is None:
                    metrics.measured_latency_ewma = sample
                else:
                    metrics.measured_latency_ewma += SAMPLE_SMOOTHING * (
                        sample - metrics.measured_latency_ewma
                    )

        elif metric == BehaviorMetric.AVAILABILITY:
            sample = _clamp(value)
            if metrics.availability_ewma is None:
                metrics.availability_ewma = NEUTRAL_SCORE
            metrics.availability_ewma += SAMPLE_SMOOTHING * (sample - metrics.availability_ewma)

        elif metric == BehaviorMetric.FORGERY_ATTEMPT:
            metrics.forgery_observations += 1
            reported = int(round(_clamp(value, 0.0, MAX_FORGERY_COUNT)))
            metrics.forgery_count = min(MAX_FORGERY_COUNT, metrics.forgery_count + reported)

        elif metric == BehaviorMetric.SYBIL_SIGNAL:
            sample = _clamp(value)
            if metrics.sybil_ewma is None:
                metrics.sybil_ewma = sample
            else:
                metrics.sybil_ewma += SAMPLE_SMOOTHING * (sample - metrics.sybil_ewma)

    def _normalized(self, metrics: _PeerMetrics) -> Dict[BehaviorMetric, float]:
        """Normalized [0, 1] value for every metric observed so far."""
        values: Dict[BehaviorMetric, float] = {}

        if metrics.relay_attempts > 0:
            # Laplace prior keeps a single observation from reaching 0 or 1
            values[BehaviorMetric.RELAY_SUCCESS] = (
                (metrics.relay_successes + 1.0) / (metrics.relay_attempts + 2.0)
            )

        if metrics.latency_ewma is not None:
            latency = 1.0 - min(1.0, metrics.latency_ewma / self.latency_ceiling_ms)
            jitter = 1.0 - min(1.0, metrics.jitter_ewma / self.latency_ceiling_ms)
            values[BehaviorMetric.LATENCY] = (latency + jitter) / 2.0

        if metrics.availability_ewma is not None:
            values[BehaviorMetric.AVAILABILITY] = _clamp(metrics.availability_ewma)

        if metrics.forgery_observations > 0:
            values[BehaviorMetric.FORGERY_ATTEMPT] = 1.0 / (1.0 + metrics.forgery_count) ** 2

        if metrics.sybil_ewma is not None:
            values[BehaviorMetric.SYBIL_SIGNAL] = 1.0 - _clamp(metrics.sybil_ewma)

        return values

    def _raw_score(self, metrics: _PeerMetrics) -> float:
        values = self._normalized(metrics)
        total_weight = sum(self._weights.get(metric, 0.0) for metric in values)
        if total_weight <= 0:
            return NEUTRAL_SCORE

        raw = sum(value * self._weights.get(metric, 0.0) for metric, value in values.items()) / total_weight
        # forgery evidence caps the raw score
        forgery = values.get(BehaviorMetric.FORGERY_ATTEMPT)
        if forgery is not None:
            raw = min(raw, forgery)
        return _clamp(raw)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_score(self, peer_id: str) -> Optional[ReputationScore]:
        """Get a copy of the peer's score, or None if the peer is unknown."""
        with self._lock:
            score = self._scores.get(peer_id)
            return replace(score) if score else None

    def get_score_value(self, peer_id: str) -> float:
        """Get the peer's score, or the neutral default for unknown peers."""
        with self._lock:
            score = self._scores.get(peer_id)
            return score.score if score else NEUTRAL_SCORE

    def is_blacklisted(self, peer_id: str, threshold: float) -> bool:
        """Check if a peer's score is below the routing blacklist threshold."""
        return self.get_score_value(peer_id) < threshold

    def known_peers(self) -> List[str]:
        with self._lock:
            return list(self._scores.keys())

    def get_top_and_worst(self, count: int = 5) -> Dict[str, List[ReputationScore]]:
        """Get the best and worst scored peers (up to count of each)."""
        with self._lock:
            ranked = sorted(self._scores.values(), key=lambda s: s.score, reverse=True)
            return {
                "best": [replace(s) for s in ranked[:count]],
                "worst": [replace(s) for s in reversed(ranked[-count:])] if ranked else [],
            }

    def on_score_updated(self, callback: Callable[[ReputationScore], None]) -> None:
        """Register a callback invoked after every score recalculation."""
        self._listeners.append(callback)

    def get_stats(self) -> Dict:
        """Get engine statistics."""
        with self._lock:
            scores = [s.score for s in self._scores.values()]
        return {
            **self.stats,
            "avg_score": round(sum(scores) / len(scores), 4) if scores else NEUTRAL_SCORE,
        }

# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Reputation-aware multi-path router for the meshnode relay core.

A directed send picks several routes to the destination and sends one copy
of the payload over each, in parallel, through the priority dispatcher.

Key features:
- Candidate routes come from the forwarding layer's route table
- Any route through a peer scoring below the blacklist threshold is
  excluded outright, however short it is
- Surviving routes are ranked by
      0.7 * avg(peer score over route) + 0.3 * 1 / (len(route) + 1)
- Copies share a correlation id and a total path count so the destination
  delivers the payload once
- Every path outcome is fed back to the reputation engine as a
  RELAY_SUCCESS event against the peers on that route

Example flow:
    1. Node A wants to reach D; it knows A->B->D, A->C->D and A->E->F->D
    2. E scores 0.05, so A->E->F->D is dropped
    3. A->B->D and A->C->D are ranked and both are used (max_paths=3)
    4. One copy fails at the first hop; B's and C's scores move accordingly
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple, TYPE_CHECKING

from .dispatcher import QosClass
from .errors import InvalidMessageError, NoViableRouteError
from .reputation import BehaviorEvent, BehaviorMetric

if TYPE_CHECKING:
    from .forwarding import ForwardingLayer
    from .reputation import ReputationEngine

logger = logging.getLogger(__name__)


DEFAULT_MAX_PATHS = 3
DEFAULT_BLACKLIST_THRESHOLD = 0.10
REPUTATION_WEIGHT = 0.7
LENGTH_WEIGHT = 0.3
SLOW_PEER_PENALTY = 0.05


class SendStatus(Enum):
    """Overall result of a multi-path send."""
    SENT = "sent"
    FLOODED = "flooded"
    NO_VIABLE_ROUTE = "no_viable_route"


@dataclass
class ScoredRoute:
    """A candidate route with its selection score."""
    hops: Tuple[str, ...]
    score: float

    @property
    def length(self) -> int:
        return len(self.hops)


@dataclass
class PathOutcome:
    """
    Result of one copy of a multi-path send.

    Attributes:
        route: Hops the copy was sent along
        score: Selection score of the route
        message_id: Id of the copy
        success: True/False once the first hop reported, None while pending
    """
    route: Tuple[str, ...]
    score: float
    message_id: Optional[str] = None
    success: Optional[bool] = None


@dataclass
class MultiPathResult:
    """
    Typed outcome of MultiPathRouter.send().

    The per-path outcomes fill in as the dispatcher reports each copy;
    outcomes(timeout) waits for all of them.
    """
    correlation_id: str
    destination_id: str
    status: SendStatus
    routes: List[ScoredRoute] = field(default_factory=list)
    rejected: int = 0
    _paths: List[PathOutcome] = field(default_factory=list, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def ok(self) -> bool:
        return self.status in (SendStatus.SENT, SendStatus.FLOODED)

    def raise_for_status(self) -> "MultiPathResult":
        """
        Raises:
            NoViableRouteError: If nothing was sent
        """
        if self.status == SendStatus.NO_VIABLE_ROUTE:
            raise NoViableRouteError(self.destination_id, self.rejected)
        return self

    def outcomes(self, timeout: Optional[float] = None) -> List[PathOutcome]:
        """
        Get the per-path outcomes, waiting up to timeout for pending ones.

        Returns:
            Copies of the outcomes (success stays None for paths still pending)
        """
        if self._paths:
            self._done.wait(timeout)
        with self._lock:
            return [PathOutcome(p.route, p.score, p.message_id, p.success) for p in self._paths]

    @property
    def succeeded(self) -> int:
        with self._lock:
            return sum(1 for p in self._paths if p.success)

    def _complete_path(self, index: int, success: bool) -> None:
        with self._lock:
            self._paths[index].success = success
            finished = all(p.success is not None for p in self._paths)
        if finished:
            self._done.set()


class MultiPathRouter:
    """
    Selects and dispatches over several routes to a destination.

    Attributes:
        node_id: This node's identifier
        forwarding: Forwarding layer used to originate each copy
        reputation: Source of peer scores and sink for path outcomes
        blacklist_threshold: Peers scoring below this are never routed through
        max_paths: Current default number of parallel paths
        metrics: Routing counters
    """

    def __init__(
        self,
        node_id: str,
        forwarding: "ForwardingLayer",
        reputation: "ReputationEngine",
        blacklist_threshold: float = DEFAULT_BLACKLIST_THRESHOLD,
        max_paths: int = DEFAULT_MAX_PATHS
    ):
        self.node_id = node_id
        self.forwarding = forwarding
        self.reputation = reputation
        self.blacklist_threshold = blacklist_threshold
        self.default_max_paths = max(1, max_paths)
        self.max_paths = self.default_max_paths

        self._slow_peers: Set[str] = set()
        self._lock = threading.Lock()

        self.metrics = {
            "sends": 0,
            "paths_dispatched": 0,
            "paths_succeeded": 0,
            "paths_failed": 0,
            "no_viable_route": 0,
            "routes_blacklisted": 0,
            "recalculations": 0,
        }
        forwarding.set_route_ranker(self.rank_viable)

        logger.info(
            f"MultiPathRouter initialized: node_id={node_id}, max_paths={self.max_paths}, "
            f"blacklist_threshold={blacklist_threshold}"
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    def set_max_paths(self, max_paths: int) -> None:
        """Set the default number of parallel paths (clamped to at least 1)."""
        if max_paths < 1:
            logger.warning(f"max_paths={max_paths} is invalid, clamping to 1")
        self.max_paths = max(1, max_paths)
        logger.info(f"Max paths set to {self.max_paths}")

    def reset_max_paths(self) -> None:
        self.max_paths = self.default_max_paths
        logger.info(f"Max paths reset to {self.max_paths}")

    # =========================================================================
    # Slow peers
    # =========================================================================

    def mark_slow(self, peer_id: str) -> None:
        """Mark a peer as slow so routes through it rank lower (not a ban)."""
        with self._lock:
            new = peer_id not in self._slow_peers
            self._slow_peers.add(peer_id)
        if new:
            logger.info(f"Peer {peer_id} marked slow")

    def clear_slow(self, peer_id: str) -> None:
        with self._lock:
            removed = peer_id in self._slow_peers
            self._slow_peers.discard(peer_id)
        if removed:
            logger.info(f"Peer {peer_id} no longer marked slow")

    @property
    def slow_peers(self) -> Set[str]:
        with self._lock:
            return set(self._slow_peers)

    # =========================================================================
    # Route Selection
    # =========================================================================

    def _peer_score(self, peer_id: str, slow: Set[str]) -> float:
        score = self.reputation.get_score_value(peer_id)
        if peer_id in slow:
            score = max(0.0, score - SLOW_PEER_PENALTY)
        return score

    def score_route(self, hops: Sequence[str]) -> float:
        """Selection score of a route: trust dominates, length breaks ties."""
        if not hops:
            return 0.0
        slow = self.slow_peers
        avg = sum(self._peer_score(p, slow) for p in hops) / len(hops)
        return REPUTATION_WEIGHT * avg + LENGTH_WEIGHT * (1.0 / (len(hops) + 1))

    def is_viable(self, hops: Sequence[str]) -> bool:
        """Check that no peer on the route is blacklisted."""
        return not any(
            self.reputation.is_blacklisted(p, self.blacklist_threshold) for p in hops
        )

    def rank_viable(self, candidates: Sequence[Tuple[str, ...]]) -> List[Tuple[str, ...]]:
        """Viable routes among candidates, best first (used by relays too)."""
        viable = [tuple(hops) for hops in candidates if self.is_viable(hops)]
        viable.sort(key=lambda hops: (-self.score_route(hops), len(hops)))
        return viable

    def candidate_routes(self, destination_id: str) -> List[Tuple[str, ...]]:
        """All known routes to a destination with a connected next hop."""
        connected = self.forwarding.transport.connected_peers()
        return self.forwarding.route_table.candidates(destination_id, connected)

    def select_routes(
        self,
        destination_id: str,
        max_paths: Optional[int] = None
    ) -> Tuple[List[ScoredRoute], int]:
        """
        Rank the viable routes to a destination.

        Args:
            destination_id: Target node
            max_paths: Number of routes to keep (default: current max_paths)

        Returns:
            (selected routes best first, number of candidates blacklisted)
        """
        limit = self.max_paths if max_paths is None else max(1, max_paths)
        candidates = self.candidate_routes(destination_id)

        viable = [hops for hops in candidates if self.is_viable(hops)]
        rejected = len(candidates) - len(viable)
        if rejected:
            self._count("routes_blacklisted", rejected)
            logger.debug(f"Excluded {rejected} routes to {destination_id} via blacklisted peers")

        scored = [ScoredRoute(hops=hops, score=self.score_route(hops)) for hops in viable]
        scored.sort(key=lambda r: (-r.score, r.length))
        return scored[:limit], rejected

    # =========================================================================
    # Sending
    # =========================================================================

    def send(
        self,
        destination_id: str,
        payload: bytes,
        max_paths: Optional[int] = None,
        qos_class: QosClass = QosClass.SYNC,
        ttl: Optional[int] = None
    ) -> MultiPathResult:
        """
        Send a payload over up to max_paths routes in parallel.

        Args:
            destination_id: Target node
            payload: Application bytes
            max_paths: Number of parallel paths (clamped to at least 1)
            qos_class: Priority tier for every copy
            ttl: Hop budget per copy (raised to the route length if shorter)

        Returns:
            MultiPathResult; status NO_VIABLE_ROUTE means nothing was sent

        Raises:
            InvalidMessageError: If ttl is given and not positive
        """
        if ttl is not None and ttl <= 0:
            raise InvalidMessageError(f"Refusing to send with ttl={ttl}")

        if max_paths is not None and max_paths < 1:
            logger.warning(f"max_paths={max_paths} is invalid, clamping to 1")

        self._count("sends")
        correlation_id = uuid.uuid4().hex
        routes, rejected = self.select_routes(destination_id, max_paths)

        if not routes:
            self._count("no_viable_route")
            logger.warning(
                f"No viable route to {destination_id} "
                f"({rejected} candidates excluded by reputation)"
            )
            return MultiPathResult(
                correlation_id=correlation_id,
                destination_id=destination_id,
                status=SendStatus.NO_VIABLE_ROUTE,
                rejected=rejected,
            )

        result = MultiPathResult(
            correlation_id=correlation_id,
            destination_id=destination_id,
            status=SendStatus.SENT,
            routes=routes,
            rejected=rejected,
            _paths=[PathOutcome(route=r.hops, score=r.score) for r in routes],
        )

        for index, route in enumerate(routes):
            hop_budget = max(ttl or self.forwarding.default_ttl, route.length)
            message = self.forwarding.originate(
                destination_id=destination_id,
                payload=payload,
                qos_class=qos_class,
                ttl=hop_budget,
                route=list(route.hops),
                correlation_id=correlation_id,
                total_paths=len(routes),
                on_complete=self._path_callback(result, index, route.hops),
            )
            result._paths[index].message_id = message.message_id
            self._count("paths_dispatched")

        logger.info(
            f"Multi-path send {correlation_id[:8]} to {destination_id} over {len(routes)} routes: "
            + "; ".join(f"{'->'.join(r.hops)} ({r.score:.3f})" for r in routes)
        )
        return result

    def _path_callback(self, result: MultiPathResult, index: int, hops: Tuple[str, ...]):
        def _on_complete(success: bool) -> None:
            self._record_path_outcome(hops, success)
            result._complete_path(index, success)
        return _on_complete

    def _record_path_outcome(self, hops: Tuple[str, ...], success: bool) -> None:
        if success:
            self._count("paths_succeeded")
        else:
            self._count("paths_failed")
            logger.debug(f"Path {'->'.join(hops)} failed")

        self.forwarding.route_table.record_result(hops, success)
        for peer_id in hops:
            self.reputation.record_event(BehaviorEvent(
                peer_id=peer_id,
                metric=BehaviorMetric.RELAY_SUCCESS,
                observed_value=1.0 if success else 0.0,
            ))

    # =========================================================================
    # Route maintenance
    # =========================================================================

    def discover_routes(self, destination_id: str) -> str:
        """
        Flood a route request towards a destination.

        Returns:
            Message id of the request
        """
        return self.forwarding.discover_routes(destination_id).message_id

    def force_recalculation(self) -> int:
        """
        Drop every learned route and rediscover the destinations it covered.

        Returns:
            Number of destinations rediscovered
        """
        destinations = self.forwarding.route_table.known_destinations()
        connected = set(self.forwarding.transport.connected_peers())
        self.forwarding.route_table.clear()
        self._count("recalculations")

        rediscovered = 0
        for destination in destinations:
            if destination in connected:
                continue
            self.discover_routes(destination)
            rediscovered += 1

        logger.warning(
            f"Route recalculation forced: {len(destinations)} destinations dropped, "
            f"{rediscovered} rediscovered"
        )
        return rediscovered

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self.metrics[name] += amount

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return self.metrics.copy()

    def get_routing_status(self) -> Dict:
        """Get current routing status for monitoring."""
        table = self.forwarding.route_table
        return {
            "node_id": self.node_id,
            "max_paths": self.max_paths,
            "blacklist_threshold": self.blacklist_threshold,
            "slow_peers": sorted(self.slow_peers),
            "routes": table.get_status(),
            "metrics": self.get_metrics(),
        }

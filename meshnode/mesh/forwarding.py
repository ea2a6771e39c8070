# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
TTL-bounded forwarding layer for the meshnode relay core.

This module moves messages across more than one hop using nothing but
direct links. Every node runs the same relay step for each inbound message:

1. Drop it silently if its message_id is already in the processed set
   (at most one relay action per message per node)
2. Deliver it locally if this node is the destination
3. Drop it if its TTL is spent
4. Otherwise decrement the TTL and hand it to the PriorityDispatcher,
   either along a known route (directed) or to every connected peer except
   the one it came from (flood)

Every transmission consumes one unit of TTL, so a message injected with
ttl=1 reaches the sender's neighbours and stops there.

Messages carry a path trace. Receivers learn the reversed trace as routes
back to each hop, which is where the MultiPathRouter gets its candidates.
ROUTE_REQUEST/ROUTE_REPLY control messages use the same machinery to
discover routes on demand.
"""

import base64
import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from .dispatcher import QosClass, QueuedItem
from .errors import InvalidMessageError

if TYPE_CHECKING:
    from .dispatcher import PriorityDispatcher
    from .transport import Transport

logger = logging.getLogger(__name__)


BROADCAST_ID = "*"
DEFAULT_TTL = 3
DEFAULT_PROCESSED_CAPACITY = 1000
DEFAULT_ROUTE_CACHE_TTL = 60.0


class MessageKind(Enum):
    """Kinds of message handled by the forwarding layer."""
    DATA = "data"
    ROUTE_REQUEST = "route_request"
    ROUTE_REPLY = "route_reply"


class RelayAction(Enum):
    """What the relay step did with one inbound message."""
    DUPLICATE = "duplicate"
    DELIVERED = "delivered"
    TTL_EXPIRED = "ttl_expired"
    FORWARDED = "forwarded"
    NO_PEERS = "no_peers"


@dataclass
class MeshMessage:
    """
    A message travelling through the mesh.

    Attributes:
        message_id: Unique identifier used for duplicate suppression
        destination_id: Target node id, or BROADCAST_ID for every node
        ttl: Remaining hop budget
        payload: Application bytes
        qos_class: Priority tier used at every hop
        origin_id: Node that created the message
        kind: DATA or a route discovery control message
        path_trace: Node ids the message has passed through, origin first
        route: Remaining source-routed hops (empty for flood/route-table forwarding)
        correlation_id: Shared id of the copies of one multi-path send
        total_paths: Number of copies sent under correlation_id
        timestamp: ISO creation time (informational only)
    """
    message_id: str
    destination_id: str
    ttl: int
    payload: bytes
    qos_class: QosClass = QosClass.SYNC
    origin_id: str = ""
    kind: MessageKind = MessageKind.DATA
    path_trace: List[str] = field(default_factory=list)
    route: List[str] = field(default_factory=list)
    correlation_id: Optional[str] = None
    total_paths: int = 1
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def create(
        cls,
        origin_id: str,
        destination_id: str,
        payload: bytes,
        ttl: int = DEFAULT_TTL,
        qos_class: QosClass = QosClass.SYNC,
        **kwargs
    ) -> "MeshMessage":
        return cls(
            message_id=uuid.uuid4().hex,
            destination_id=destination_id,
            ttl=ttl,
            payload=payload,
            qos_class=qos_class,
            origin_id=origin_id,
            path_trace=[origin_id],
            **kwargs
        )

    def to_bytes(self) -> bytes:
        """Serialize the message for transmission."""
        data = {
            "message_id": self.message_id,
            "destination_id": self.destination_id,
            "ttl": self.ttl,
            "qos_class": self.qos_class.value,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "origin_id": self.origin_id,
            "kind": self.kind.value,
            "path_trace": self.path_trace,
            "route": self.route,
            "correlation_id": self.correlation_id,
            "total_paths": self.total_paths,
            "timestamp": self.timestamp,
        }
        return json.dumps(data).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "MeshMessage":
        """
        Deserialize a message received from a peer.

        Raises:
            InvalidMessageError: If the bytes are not a well-formed message
        """
        try:
            parsed = json.loads(data.decode("utf-8"))
            message = cls(
                message_id=str(parsed["message_id"]),
                destination_id=str(parsed["destination_id"]),
                ttl=int(parsed["ttl"]),
                payload=base64.b64decode(parsed.get("payload", ""), validate=True),
                qos_class=QosClass(parsed.get("qos_class", QosClass.SYNC.value)),
                origin_id=str(parsed.get("origin_id", "")),
                kind=MessageKind(parsed.get("kind", MessageKind.DATA.value)),
                path_trace=[str(p) for p in parsed.get("path_trace", [])],
                route=[str(p) for p in parsed.get("route", [])],
                correlation_id=parsed.get("correlation_id"),
                total_paths=int(parsed.get("total_paths", 1)),
                timestamp=str(parsed.get("timestamp", "")),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidMessageError(f"Malformed mesh message: {e}") from e

        if message.ttl < 0:
            raise InvalidMessageError(f"Negative ttl in message {message.message_id}")
        return message


class ProcessedMessageSet:
    """
    Bounded recency set of message ids already handled by this node.

    Eviction is FIFO by insertion order once capacity is reached, so memory
    stays bounded under a flood. A duplicate older than the capacity window
    may be relayed again.
    """

    def __init__(self, capacity: int = DEFAULT_PROCESSED_CAPACITY):
        self.capacity = max(1, capacity)
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, message_id: str) -> bool:
        """
        Record a message id.

        Returns:
            True if the id was new, False if it was already present
        """
        with self._lock:
            if message_id in self._ids:
                return False
            self._ids[message_id] = None
            while len(self._ids) > self.capacity:
                self._ids.popitem(last=False)
            return True

    def __contains__(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


@dataclass
class RoutePath:
    """
    A learned route to a destination.

    Attributes:
        destination: Target node id
        hops: Node ids from the next hop up to and including the destination
        last_updated: When the route was last learned or confirmed (epoch seconds)
        reliability: Success rate 0.0-1.0 of sends over this route
        success_count: Successful sends over this route
        failure_count: Failed sends over this route
    """
    destination: str
    hops: Tuple[str, ...]
    last_updated: float = field(default_factory=time.time)
    reliability: float = 1.0
    success_count: int = 0
    failure_count: int = 0

    @property
    def next_hop(self) -> str:
        return self.hops[0]

    @property
    def length(self) -> int:
        return len(self.hops)

    def is_expired(self, max_age: float = DEFAULT_ROUTE_CACHE_TTL) -> bool:
        return time.time() - self.last_updated > max_age

    def record_success(self) -> None:
        self.success_count += 1
        self._update_reliability()
        self.last_updated = time.time()

    def record_failure(self) -> None:
        self.failure_count += 1
        self._update_reliability()

    def _update_reliability(self) -> None:
        total = self.success_count + self.failure_count
        if total > 0:
            self.reliability = self.success_count / total


class RouteTable:
    """
    Learned routes by destination.

    Routes are hints, not state that correctness depends on: they expire
    after route_cache_ttl seconds and are invalidated when their next hop
    disconnects.
    """

    def __init__(
        self,
        node_id: str,
        route_cache_ttl: float = DEFAULT_ROUTE_CACHE_TTL,
        max_routes_per_destination: int = 8
    ):
        self.node_id = node_id
        self.route_cache_ttl = route_cache_ttl
        self.max_routes_per_destination = max(1, max_routes_per_destination)
        self._routes: Dict[str, Dict[Tuple[str, ...], RoutePath]] = {}
        self._lock = threading.Lock()

    def learn(self, hops: Sequence[str]) -> bool:
        """
        Add or refresh a route.

        Routes through this node or visiting a node twice are ignored.

        Returns:
            True if the route was new
        """
        hops = tuple(hops)
        if not hops or self.node_id in hops or len(set(hops)) != len(hops):
            return False

        destination = hops[-1]
        with self._lock:
            routes = self._routes.setdefault(destination, {})
            existing = routes.get(hops)
            if existing:
                existing.last_updated = time.time()
                return False

            if len(routes) >= self.max_routes_per_destination:
                oldest = min(routes.values(), key=lambda r: r.last_updated)
                del routes[oldest.hops]
            routes[hops] = RoutePath(destination=destination, hops=hops)

        logger.debug(f"Route learned: {self.node_id} -> {' -> '.join(hops)}")
        return True

    def learn_from_trace(self, trace: Sequence[str]) -> int:
        """
        Learn routes back to every node on a received path trace.

        A trace [origin, h1, ..., hk] received from hk yields the routes
        [hk], [hk, ..., h1] and [hk, ..., h1, origin].

        Returns:
            Number of new routes learned
        """
        reversed_trace = list(reversed(trace))
        learned = 0
        for i in range(len(reversed_trace)):
            if self.learn(reversed_trace[: i + 1]):
                learned += 1
        return learned

    def candidates(self, destination: str, connected: Iterable[str]) -> List[Tuple[str, ...]]:
        """
        All usable routes to a destination.

        A route is usable if it has not expired and its next hop is
        currently connected. A connected destination is always a candidate.
        """
        connected = set(connected)
        found: List[Tuple[str, ...]] = []
        if destination in connected:
            found.append((destination,))

        with self._lock:
            for route in self._routes.get(destination, {}).values():
                if route.is_expired(self.route_cache_ttl):
                    continue
                if route.next_hop in connected and route.hops not in found:
                    found.append(route.hops)
        return found

    def best_next_hop(self, destination: str, connected: Iterable[str]) -> Optional[str]:
        """Next hop of the shortest, most reliable usable route."""
        connected = set(connected)
        if destination in connected:
            return destination

        with self._lock:
            usable = [
                r for r in self._routes.get(destination, {}).values()
                if not r.is_expired(self.route_cache_ttl) and r.next_hop in connected
            ]
        if not usable:
            return None
        usable.sort(key=lambda r: (r.length, -r.reliability, -r.last_updated))
        return usable[0].next_hop

    def has_route_to(self, destination: str) -> bool:
        with self._lock:
            return any(
                not r.is_expired(self.route_cache_ttl)
                for r in self._routes.get(destination, {}).values()
            )

    def get_route(self, hops: Sequence[str]) -> Optional[RoutePath]:
        hops = tuple(hops)
        if not hops:
            return None
        with self._lock:
            return self._routes.get(hops[-1], {}).get(hops)

    def record_result(self, hops: Sequence[str], success: bool) -> None:
        """Record the outcome of a send over a route (learned routes only)."""
        with self._lock:
            route = self._routes.get(hops[-1], {}).get(tuple(hops)) if hops else None
            if route is None:
                return
            if success:
                route.record_success()
            else:
                route.record_failure()

    def invalidate_peer(self, peer_id: str) -> int:
        """Remove every route whose next hop is peer_id."""
        removed = 0
        with self._lock:
            for destination in list(self._routes):
                routes = self._routes[destination]
                for hops in [h for h in routes if h[0] == peer_id]:
                    del routes[hops]
                    removed += 1
                if not routes:
                    del self._routes[destination]
        if removed:
            logger.info(f"Invalidated {removed} routes via {peer_id}")
        return removed

    def known_destinations(self) -> List[str]:
        with self._lock:
            return list(self._routes)

    def clear(self) -> None:
        with self._lock:
            self._routes.clear()

    def cleanup_expired(self) -> int:
        """Remove expired routes from the table."""
        removed = 0
        with self._lock:
            for destination in list(self._routes):
                routes = self._routes[destination]
                for hops in [h for h, r in routes.items() if r.is_expired(self.route_cache_ttl)]:
                    del routes[hops]
                    removed += 1
                if not routes:
                    del self._routes[destination]
        if removed:
            logger.debug(f"Cleaned up {removed} expired routes")
        return removed

    def get_status(self) -> Dict[str, List[Dict]]:
        with self._lock:
            return {
                dest: [
                    {
                        "hops": list(r.hops),
                        "reliability": r.reliability,
                        "expired": r.is_expired(self.route_cache_ttl),
                    }
                    for r in routes.values()
                ]
                for dest, routes in self._routes.items()
            }


DeliverCallback = Callable[[MeshMessage], None]
RouteRanker = Callable[[List[Tuple[str, ...]]], List[Tuple[str, ...]]]


class ForwardingLayer:
    """
    Relay step plus message origination for one node.

    Inbound bytes from the transport are parsed and relayed; nothing here
    sends inline. Every outgoing copy is handed to the PriorityDispatcher,
    so a receive callback never recurses into another node's relay.

    Attributes:
        node_id: This node's identifier
        default_ttl: Hop budget for originated messages
        processed: Recency set of handled message ids
        route_table: Routes learned from path traces
        metrics: Relay counters
    """

    def __init__(
        self,
        node_id: str,
        transport: "Transport",
        dispatcher: "PriorityDispatcher",
        route_table: Optional[RouteTable] = None,
        default_ttl: int = DEFAULT_TTL,
        processed_capacity: int = DEFAULT_PROCESSED_CAPACITY
    ):
        self.node_id = node_id
        self.transport = transport
        self.dispatcher = dispatcher
        self.route_table = route_table or RouteTable(node_id)
        self.default_ttl = max(1, default_ttl)
        self.processed = ProcessedMessageSet(processed_capacity)
        self._delivered = ProcessedMessageSet(processed_capacity)
        self._deliver_callbacks: List[DeliverCallback] = []
        self._route_ranker: Optional[RouteRanker] = None
        self._metrics_lock = threading.Lock()

        self.metrics = {
            "messages_originated": 0,
            "messages_relayed": 0,
            "duplicates_dropped": 0,
            "ttl_expired": 0,
            "delivered": 0,
            "duplicate_deliveries": 0,
            "malformed": 0,
            "routes_learned": 0,
        }

        logger.info(
            f"ForwardingLayer initialized: node_id={node_id}, default_ttl={self.default_ttl}, "
            f"processed_capacity={self.processed.capacity}"
        )

    # =========================================================================
    # Origination
    # =========================================================================

    def originate(
        self,
        destination_id: str,
        payload: bytes,
        qos_class: QosClass = QosClass.SYNC,
        ttl: Optional[int] = None,
        route: Optional[Sequence[str]] = None,
        kind: MessageKind = MessageKind.DATA,
        correlation_id: Optional[str] = None,
        total_paths: int = 1,
        on_complete: Optional[Callable[[bool], None]] = None
    ) -> MeshMessage:
        """
        Create a message at this node and hand it to the dispatcher.

        Args:
            destination_id: Target node id or BROADCAST_ID
            payload: Application bytes
            qos_class: Priority tier
            ttl: Hop budget (default: default_ttl)
            route: Explicit hops to follow, next hop first
            kind: DATA or a route discovery control message
            correlation_id: Shared id for multi-path copies
            total_paths: Number of copies under correlation_id
            on_complete: Called once with True if any first-hop send succeeded

        Returns:
            The originated message

        Raises:
            InvalidMessageError: If ttl is not positive
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise InvalidMessageError(f"Refusing to originate message with ttl={ttl}")

        message = MeshMessage.create(
            origin_id=self.node_id,
            destination_id=destination_id,
            payload=payload,
            ttl=ttl,
            qos_class=qos_class,
            kind=kind,
            route=list(route or []),
            correlation_id=correlation_id,
            total_paths=total_paths,
        )
        self.processed.add(message.message_id)
        self._count("messages_originated")

        if destination_id == self.node_id:
            self._deliver(message)
            if on_complete:
                on_complete(True)
            return message

        hops = self._transmit(message, received_from=None, on_complete=on_complete)
        logger.debug(
            f"Originated {message.kind.value} {message.message_id} -> {destination_id} "
            f"via {hops or 'nobody'} (ttl={ttl})"
        )
        return message

    # =========================================================================
    # Relay
    # =========================================================================

    def handle_receive(self, peer_id: str, data: bytes) -> Optional[RelayAction]:
        """Transport callback: parse inbound bytes and run the relay step."""
        try:
            message = MeshMessage.from_bytes(data)
        except InvalidMessageError as e:
            self._count("malformed")
            logger.warning(f"Dropping malformed message from {peer_id}: {e}")
            return None
        return self.relay(message, peer_id)

    def relay(self, message: MeshMessage, received_from: Optional[str]) -> RelayAction:
        """
        Run the relay step for one inbound message.

        Args:
            message: The received message
            received_from: Adjacent peer that handed it to us

        Returns:
            The action taken
        """
        trace = list(message.path_trace)
        if received_from and (not trace or trace[-1] != received_from):
            trace.append(received_from)
        # Duplicates still teach alternate routes; they are never relayed
        self._count("routes_learned", self.route_table.learn_from_trace(trace))

        if not self.processed.add(message.message_id):
            self._count("duplicates_dropped")
            logger.debug(f"Duplicate {message.message_id} from {received_from}, dropped")
            if message.kind == MessageKind.ROUTE_REQUEST and message.destination_id == self.node_id:
                message.path_trace = trace
                self._answer_route_request(message)
            return RelayAction.DUPLICATE

        if message.destination_id == self.node_id:
            self._deliver(message)
            return RelayAction.DELIVERED

        if message.destination_id == BROADCAST_ID:
            self._deliver(message)

        if message.ttl <= 0:
            self._count("ttl_expired")
            logger.debug(f"Message {message.message_id} TTL spent at {self.node_id}, dropped")
            return RelayAction.TTL_EXPIRED

        message.path_trace = trace + [self.node_id]
        hops = self._transmit(message, received_from=received_from)
        if not hops:
            return RelayAction.NO_PEERS

        self._count("messages_relayed")
        logger.debug(
            f"Relaying {message.message_id}: {message.origin_id} -> {self.node_id} -> "
            f"{hops} (ttl={message.ttl})"
        )
        return RelayAction.FORWARDED

    def _transmit(
        self,
        message: MeshMessage,
        received_from: Optional[str],
        on_complete: Optional[Callable[[bool], None]] = None
    ) -> List[str]:
        message.ttl -= 1
        next_hops = self._select_next_hops(message, received_from)
        if not next_hops:
            logger.debug(f"No peers to forward {message.message_id} to")
            if on_complete:
                on_complete(False)
            return []

        payload = message.to_bytes()
        item_callback = _any_success(len(next_hops), on_complete) if on_complete else None
        for hop in next_hops:
            self.dispatcher.enqueue(QueuedItem(
                payload=payload,
                destination_id=hop,
                qos_class=message.qos_class,
                source_peer_id=message.origin_id,
                on_complete=item_callback,
            ))
        return next_hops

    def _select_next_hops(self, message: MeshMessage, received_from: Optional[str]) -> List[str]:
        connected = [p for p in self.transport.connected_peers() if p != received_from]

        if message.route:
            next_hop = message.route[0]
            if next_hop in connected and self._is_viable_hop(next_hop):
                message.route = message.route[1:]
                return [next_hop]
            logger.debug(
                f"Source route of {message.message_id} unusable at {next_hop}, falling back"
            )
            message.route = []

        if message.destination_id != BROADCAST_ID and message.kind != MessageKind.ROUTE_REQUEST:
            next_hop = self._best_next_hop(message.destination_id, connected)
            if next_hop:
                return [next_hop]

        return connected

    def set_route_ranker(self, ranker: Optional[RouteRanker]) -> None:
        """
        Set the function that filters and orders learned routes for relays.

        The ranker receives candidate routes and returns the viable ones,
        best first. Without one, relays pick the shortest, most reliable route.
        """
        self._route_ranker = ranker

    def _is_viable_hop(self, peer_id: str) -> bool:
        return self._route_ranker is None or bool(self._route_ranker([(peer_id,)]))

    def _best_next_hop(self, destination_id: str, connected: List[str]) -> Optional[str]:
        if self._route_ranker is None:
            return self.route_table.best_next_hop(destination_id, connected)

        if destination_id in connected and self._is_viable_hop(destination_id):
            return destination_id
        ranked = self._route_ranker(self.route_table.candidates(destination_id, connected))
        if not ranked:
            logger.debug(f"No viable learned route to {destination_id}, flooding")
            return None
        return ranked[0][0]

    # =========================================================================
    # Delivery
    # =========================================================================

    def _deliver(self, message: MeshMessage) -> None:
        if message.kind == MessageKind.ROUTE_REQUEST:
            self._answer_route_request(message)
            return

        if message.kind == MessageKind.ROUTE_REPLY:
            logger.info(
                f"Route discovered: {self.node_id} -> {message.origin_id} "
                f"({len(message.path_trace) - 1} hops)"
            )
            return

        key = message.correlation_id or message.message_id
        if not self._delivered.add(key):
            self._count("duplicate_deliveries")
            logger.debug(f"Copy of {key} already delivered, ignoring {message.message_id}")
            return

        self._count("delivered")
        logger.debug(f"Delivered {message.message_id} from {message.origin_id}")
        for callback in list(self._deliver_callbacks):
            try:
                callback(message)
            except Exception as e:
                logger.error(f"Delivery callback failed for {message.message_id}: {e}")

    def _answer_route_request(self, request: MeshMessage) -> None:
        if request.destination_id == BROADCAST_ID or request.origin_id == self.node_id:
            return

        back = list(reversed(request.path_trace))
        if not back:
            return
        self.originate(
            destination_id=request.origin_id,
            payload=b"",
            qos_class=QosClass.SYNC,
            ttl=max(self.default_ttl, len(back)),
            route=back,
            kind=MessageKind.ROUTE_REPLY,
        )

    def discover_routes(self, destination_id: str) -> MeshMessage:
        """Flood a route request towards a destination."""
        logger.info(f"Route discovery initiated: {self.node_id} -> {destination_id}")
        return self.originate(
            destination_id=destination_id,
            payload=b"",
            qos_class=QosClass.SYNC,
            kind=MessageKind.ROUTE_REQUEST,
        )

    def _count(self, name: str, amount: int = 1) -> None:
        with self._metrics_lock:
            self.metrics[name] += amount

    def get_metrics(self) -> Dict[str, int]:
        with self._metrics_lock:
            return self.metrics.copy()

    def on_deliver(self, callback: DeliverCallback) -> None:
        """Register a callback for messages delivered to this node."""
        self._deliver_callbacks.append(callback)

    def get_status(self) -> Dict:
        return {
            "node_id": self.node_id,
            "processed_ids": len(self.processed),
            "routes": self.route_table.get_status(),
            "metrics": self.get_metrics(),
        }


def _any_success(expected: int, callback: Callable[[bool], None]) -> Callable[[QueuedItem, bool], None]:
    """Collapse several per-item completions into one success-if-any callback."""
    state = {"remaining": expected, "success": False}
    lock = threading.Lock()

    def _done(item: QueuedItem, success: bool) -> None:
        with lock:
            state["remaining"] -= 1
            state["success"] = state["success"] or success
            finished = state["remaining"] == 0
            result = state["success"]
        if finished:
            callback(result)

    return _done

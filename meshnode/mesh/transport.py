# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Transport interface consumed by the meshnode relay core.

The core only ever talks to directly adjacent peers through a Transport:
it asks which peers are connected, hands over raw bytes for one peer, and
is called back when bytes arrive or peers come and go. Sends are
fire-and-report; nothing here is assumed reliable.

Two implementations ship with the package:
- UdpTransport (peering.py): the UDP heartbeat/peering service
- InMemoryTransport + SimulatedMesh (this module): an in-process link graph
  used by the test suite and the demo scenario
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


ReceiveCallback = Callable[[str, bytes], None]
PeerCallback = Callable[[str], None]
LatencyCallback = Callable[[str, float], None]


class Transport(ABC):
    """
    Link-layer collaborator for one mesh node.

    Subclasses implement connected_peers() and send(); the callback
    plumbing is shared. Callbacks are invoked from the transport's own
    threads and must not block.
    """

    def __init__(self, node_id: str):
        self.node_id = node_id
        self._on_receive: Optional[ReceiveCallback] = None
        self._on_peer_connected: Optional[PeerCallback] = None
        self._on_peer_disconnected: Optional[PeerCallback] = None
        self._on_latency: Optional[LatencyCallback] = None

    @abstractmethod
    def connected_peers(self) -> List[str]:
        """Get the ids of all directly connected peers."""

    @abstractmethod
    def send(self, peer_id: str, data: bytes) -> bool:
        """
        Send raw bytes to one adjacent peer.

        Returns:
            True if the transport accepted the bytes for delivery
        """

    def start(self) -> None:
        """Start any background activity (no-op by default)."""

    def stop(self) -> None:
        """Stop any background activity (no-op by default)."""

    def try_reconnect(self, peer_id: str) -> bool:
        """Attempt to re-establish a link to a dropped peer."""
        logger.debug(f"{type(self).__name__} cannot reconnect to {peer_id}")
        return False

    def discover_peers(self, count: int) -> int:
        """
        Actively look for replacement peers.

        Returns:
            Number of new links established (or probes sent)
        """
        logger.debug(f"{type(self).__name__} has no peer discovery (wanted {count})")
        return 0

    # Callback registration

    def on_receive(self, callback: ReceiveCallback) -> None:
        """Set callback for inbound bytes: callback(peer_id, data)."""
        self._on_receive = callback

    def on_peer_connected(self, callback: PeerCallback) -> None:
        """Set callback for a peer becoming reachable."""
        self._on_peer_connected = callback

    def on_peer_disconnected(self, callback: PeerCallback) -> None:
        """Set callback for a peer becoming unreachable."""
        self._on_peer_disconnected = callback

    def on_latency(self, callback: LatencyCallback) -> None:
        """Set callback for link latency samples: callback(peer_id, rtt_ms)."""
        self._on_latency = callback

    # Helpers for subclasses

    def _emit_receive(self, peer_id: str, data: bytes) -> None:
        if self._on_receive:
            try:
                self._on_receive(peer_id, data)
            except Exception as e:
                logger.error(f"Receive handler failed for data from {peer_id}: {e}")

    def _emit_connected(self, peer_id: str) -> None:
        if self._on_peer_connected:
            try:
                self._on_peer_connected(peer_id)
            except Exception as e:
                logger.error(f"Peer-connected handler failed for {peer_id}: {e}")

    def _emit_disconnected(self, peer_id: str) -> None:
        if self._on_peer_disconnected:
            try:
                self._on_peer_disconnected(peer_id)
            except Exception as e:
                logger.error(f"Peer-disconnected handler failed for {peer_id}: {e}")

    def _emit_latency(self, peer_id: str, rtt_ms: float) -> None:
        if self._on_latency:
            try:
                self._on_latency(peer_id, rtt_ms)
            except Exception as e:
                logger.error(f"Latency handler failed for {peer_id}: {e}")


class InMemoryTransport(Transport):
    """Transport endpoint attached to a SimulatedMesh."""

    def __init__(self, node_id: str, mesh: "SimulatedMesh"):
        super().__init__(node_id)
        self.mesh = mesh
        self.sent: List[Tuple[str, bytes]] = []

    def connected_peers(self) -> List[str]:
        return self.mesh.neighbors(self.node_id)

    def send(self, peer_id: str, data: bytes) -> bool:
        ok = self.mesh.deliver(self.node_id, peer_id, data)
        if ok:
            self.sent.append((peer_id, data))
        return ok

    def try_reconnect(self, peer_id: str) -> bool:
        return self.mesh.restore_link(self.node_id, peer_id)

    def discover_peers(self, count: int) -> int:
        return self.mesh.discover(self.node_id, count)


class SimulatedMesh:
    """
    In-process link graph connecting InMemoryTransport endpoints.

    Links are undirected. Delivery is synchronous: send() on one endpoint
    invokes the receive callback of the other before returning, so the
    receiving side must only enqueue work (as the forwarding layer does).

    Example:
        mesh = SimulatedMesh()
        a, b = mesh.add_node("a"), mesh.add_node("b")
        mesh.link("a", "b", latency_ms=40.0)
    """

    def __init__(self):
        self.transports: Dict[str, InMemoryTransport] = {}
        self._links: Set[frozenset] = set()
        self._known_links: Set[frozenset] = set()
        self._latency: Dict[frozenset, float] = {}
        self._offline: Set[str] = set()
        self._failing: Set[str] = set()
        self._lock = threading.Lock()

    def add_node(self, node_id: str) -> InMemoryTransport:
        transport = InMemoryTransport(node_id, self)
        self.transports[node_id] = transport
        return transport

    def neighbors(self, node_id: str) -> List[str]:
        with self._lock:
            peers = []
            for link in self._links:
                if node_id in link:
                    peers.extend(p for p in link if p != node_id)
            return sorted(peers)

    def is_linked(self, a: str, b: str) -> bool:
        with self._lock:
            return frozenset((a, b)) in self._links

    def link(self, a: str, b: str, latency_ms: Optional[float] = None) -> None:
        """Bring up a link between two nodes and notify both ends."""
        key = frozenset((a, b))
        with self._lock:
            if key in self._links:
                return
            self._links.add(key)
            self._known_links.add(key)
            if latency_ms is not None:
                self._latency[key] = latency_ms
        logger.debug(f"Simulated link up: {a} <-> {b}")
        self.transports[a]._emit_connected(b)
        self.transports[b]._emit_connected(a)

    def unlink(self, a: str, b: str) -> None:
        """Take a link down and notify both ends."""
        key = frozenset((a, b))
        with self._lock:
            if key not in self._links:
                return
            self._links.discard(key)
        logger.debug(f"Simulated link down: {a} <-> {b}")
        self.transports[a]._emit_disconnected(b)
        self.transports[b]._emit_disconnected(a)

    def set_latency(self, a: str, b: str, latency_ms: float) -> None:
        with self._lock:
            self._latency[frozenset((a, b))] = latency_ms

    def take_offline(self, node_id: str) -> None:
        """Drop every link of a node (simulated churn)."""
        with self._lock:
            self._offline.add(node_id)
        for peer in self.neighbors(node_id):
            self.unlink(node_id, peer)

    def bring_online(self, node_id: str) -> None:
        with self._lock:
            self._offline.discard(node_id)

    def fail_sends(self, node_id: str, failing: bool = True) -> None:
        """Make every send towards node_id fail (or stop failing)."""
        with self._lock:
            if failing:
                self._failing.add(node_id)
            else:
                self._failing.discard(node_id)

    def restore_link(self, a: str, b: str) -> bool:
        """Re-establish a previously known link if both ends are online."""
        key = frozenset((a, b))
        with self._lock:
            allowed = (
                key in self._known_links
                and a not in self._offline
                and b not in self._offline
            )
        if allowed:
            self.link(a, b)
        return allowed

    def discover(self, node_id: str, count: int) -> int:
        """Restore up to count known-but-down links of node_id."""
        with self._lock:
            candidates = sorted(
                p
                for link in self._known_links - self._links
                if node_id in link
                for p in link
                if p != node_id and p not in self._offline
            )
        restored = 0
        for peer in candidates[:max(0, count)]:
            if self.restore_link(node_id, peer):
                restored += 1
        return restored

    def deliver(self, src: str, dst: str, data: bytes) -> bool:
        key = frozenset((src, dst))
        with self._lock:
            if key not in self._links or dst in self._failing:
                return False
            latency = self._latency.get(key)
        self.transports[dst]._emit_receive(src, data)
        if latency is not None:
            self.transports[src]._emit_latency(dst, latency)
        return True

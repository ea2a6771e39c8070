# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
UDP peering transport for meshnode.

> [!WARNING]
> Plain UDP with no encryption or authentication of frames. Intended for
> lab networks and demos.

This module implements:
- Peer discovery via static configuration and ANNOUNCE frames
- Heartbeat PING/PONG exchange with RTT measurement
- Peer status tracking (REACHABLE after any frame, UNREACHABLE after timeout)
- DATA frames carrying relay-core message bytes

Frame format: one type byte, the sender's node id, a NUL byte, then the
body (empty for control frames).

Configuration example (in node config.yaml):

    transport:
      listen_port: 7777
      heartbeat_interval_seconds: 10
      peer_timeout_seconds: 30
      peers:
        - node_id: relay-002
          address: 192.168.1.102
          port: 7777
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .transport import Transport

logger = logging.getLogger(__name__)


MAX_DATAGRAM = 65507


class PeerStatus(Enum):
    """Status of a peer node in the mesh."""
    UNKNOWN = "unknown"
    DISCOVERED = "discovered"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


@dataclass
class PeerInfo:
    """Information about a peer node."""
    node_id: str
    address: str
    port: int
    status: PeerStatus = PeerStatus.UNKNOWN
    last_seen: Optional[datetime] = None
    rtt_ms: Optional[float] = None
    metadata: Dict = field(default_factory=dict)

    @property
    def is_stale(self) -> bool:
        """Check if peer information is stale (no contact in 60 seconds)."""
        if self.last_seen is None:
            return True
        return datetime.now(timezone.utc) - self.last_seen > timedelta(seconds=60)


class UdpTransport(Transport):
    """
    UDP transport with heartbeat-based liveness.

    Peers count as connected while REACHABLE. The transitions into and out
    of REACHABLE raise the peer-connected/peer-disconnected callbacks, and
    every PONG reports an RTT sample through the latency callback.

    Attributes:
        node_id: This node's identifier
        listen_port: UDP port for receiving peer frames
        peers: Known peers by node_id
        running: Whether the service is active
    """

    MSG_PING = b'\x01'
    MSG_PONG = b'\x02'
    MSG_ANNOUNCE = b'\x03'
    MSG_DATA = b'\x06'

    def __init__(
        self,
        node_id: str,
        listen_port: int = 7777,
        heartbeat_interval: float = 10.0,
        peer_timeout: float = 30.0,
        bind_address: str = "0.0.0.0"
    ):
        """
        Initialize the UDP transport.

        Args:
            node_id: This node's identifier
            listen_port: UDP port to listen on (default: 7777)
            heartbeat_interval: Seconds between heartbeat pings (default: 10)
            peer_timeout: Seconds before marking peer unreachable (default: 30)
            bind_address: Local address to bind
        """
        super().__init__(node_id)
        self.listen_port = listen_port
        self.heartbeat_interval = heartbeat_interval
        self.peer_timeout = peer_timeout
        self.bind_address = bind_address

        self.peers: Dict[str, PeerInfo] = {}
        self.running = False
        self._socket: Optional[socket.socket] = None
        self._listener_thread: Optional[threading.Thread] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._pending_pings: Dict[str, float] = {}
        self._lock = threading.Lock()

        logger.info(f"UdpTransport initialized: node_id={node_id}, port={listen_port}")

    def add_static_peer(self, node_id: str, address: str, port: int = 7777) -> None:
        """
        Add a peer from static configuration.

        Args:
            node_id: Peer's node identifier
            address: Peer's IP address or hostname
            port: Peer's mesh port
        """
        if node_id == self.node_id:
            logger.debug(f"Skipping self as peer: {node_id}")
            return

        with self._lock:
            self.peers[node_id] = PeerInfo(
                node_id=node_id,
                address=address,
                port=port,
                status=PeerStatus.DISCOVERED
            )
        logger.info(f"Added static peer: {node_id} at {address}:{port}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start the transport.

        This starts:
        - UDP listener for incoming peer frames
        - Heartbeat sender for periodic peer pings
        """
        if self.running:
            logger.warning("UdpTransport already running")
            return

        try:
            self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._socket.bind((self.bind_address, self.listen_port))
            self._socket.settimeout(1.0)
            logger.info(f"Mesh transport listening on UDP port {self.listen_port}")
        except OSError as e:
            logger.error(f"Failed to bind mesh socket: {e}")
            self._socket = None
            return

        self.running = True
        self._stop_event.clear()

        self._listener_thread = threading.Thread(target=self._listener_loop, daemon=True)
        self._listener_thread.start()

        self._heartbeat_thread = threading.Thread(target=self._heartbeat_loop, daemon=True)
        self._heartbeat_thread.start()

        logger.info("Mesh transport started")

    def stop(self) -> None:
        """Stop the transport."""
        self.running = False
        self._stop_event.set()

        if self._socket:
            try:
                self._socket.close()
            except OSError as e:
                logger.debug(f"Error closing mesh socket: {e}")
            self._socket = None

        if self._listener_thread:
            self._listener_thread.join(timeout=2.0)
        if self._heartbeat_thread:
            self._heartbeat_thread.join(timeout=2.0)

        logger.info("Mesh transport stopped")

    def _listener_loop(self) -> None:
        """Main loop for receiving peer frames."""
        logger.debug("Listener loop started")

        while self.running and self._socket:
            try:
                data, addr = self._socket.recvfrom(MAX_DATAGRAM)
                self._handle_frame(data, addr)
            except socket.timeout:
                continue
            except Exception as e:
                if self.running:
                    logger.error(f"Listener error: {e}")

    def _heartbeat_loop(self) -> None:
        """Main loop for sending heartbeat pings to peers."""
        logger.debug("Heartbeat loop started")

        while self.running:
            with self._lock:
                peers = list(self.peers.values())
            for peer in peers:
                self._send_ping(peer)
                self._check_peer_timeout(peer)

            if self._stop_event.wait(self.heartbeat_interval):
                break

    # =========================================================================
    # Frames
    # =========================================================================

    def _frame(self, msg_type: bytes, body: bytes = b"") -> bytes:
        return msg_type + self.node_id.encode('utf-8') + b'\x00' + body

    def _sendto(self, frame: bytes, addr: Tuple[str, int]) -> bool:
        sock = self._socket
        if not sock:
            return False
        try:
            sock.sendto(frame, addr)
            return True
        except OSError as e:
            logger.debug(f"Failed to send to {addr[0]}:{addr[1]}: {e}")
            return False

    def _send_ping(self, peer: PeerInfo) -> bool:
        """Send a ping to a peer."""
        sent = self._sendto(self._frame(self.MSG_PING), (peer.address, peer.port))
        if sent:
            with self._lock:
                self._pending_pings[peer.node_id] = time.time()
            logger.debug(f"Sent ping to {peer.node_id} at {peer.address}:{peer.port}")
        return sent

    def _handle_frame(self, data: bytes, addr: tuple) -> None:
        """Handle an incoming peer frame."""
        if len(data) < 2:
            return

        msg_type = data[0:1]
        sender_raw, sep, body = data[1:].partition(b'\x00')
        if not sep:
            logger.debug(f"Dropping unterminated frame from {addr}")
            return
        sender_id = sender_raw.decode('utf-8', errors='ignore')
        if not sender_id or sender_id == self.node_id:
            return

        if msg_type == self.MSG_PING:
            logger.debug(f"Received ping from {sender_id} at {addr}")
            self._sendto(self._frame(self.MSG_PONG), addr)
            self._update_peer_status(sender_id, addr, PeerStatus.REACHABLE)

        elif msg_type == self.MSG_PONG:
            logger.debug(f"Received pong from {sender_id} at {addr}")
            rtt_ms = None
            with self._lock:
                sent_at = self._pending_pings.pop(sender_id, None)
            if sent_at is not None:
                rtt_ms = (time.time() - sent_at) * 1000
            self._update_peer_status(sender_id, addr, PeerStatus.REACHABLE, rtt_ms)

        elif msg_type == self.MSG_ANNOUNCE:
            logger.debug(f"Received announce from {sender_id} at {addr}")
            self._update_peer_status(sender_id, addr, PeerStatus.REACHABLE)
            with self._lock:
                peer = self.peers.get(sender_id)
            if peer:
                self._send_ping(peer)

        elif msg_type == self.MSG_DATA:
            self._update_peer_status(sender_id, addr, PeerStatus.REACHABLE)
            self._emit_receive(sender_id, body)

        else:
            logger.debug(f"Unknown frame type {msg_type!r} from {addr}")

    def _update_peer_status(
        self,
        node_id: str,
        addr: tuple,
        status: PeerStatus,
        rtt_ms: Optional[float] = None
    ) -> None:
        """Update the status of a peer and raise link callbacks on transitions."""
        now = datetime.now(timezone.utc)

        with self._lock:
            peer = self.peers.get(node_id)
            if peer is None:
                peer = PeerInfo(node_id=node_id, address=addr[0], port=addr[1])
                self.peers[node_id] = peer
                logger.info(f"Discovered new peer: {node_id} at {addr[0]}:{addr[1]}")
            old_status = peer.status
            peer.status = status
            peer.last_seen = now
            if rtt_ms is not None:
                peer.rtt_ms = rtt_ms

        if old_status != status:
            logger.info(f"Peer {node_id} status changed: {old_status.value} -> {status.value}")
            if status == PeerStatus.REACHABLE:
                self._emit_connected(node_id)
        if rtt_ms is not None:
            self._emit_latency(node_id, rtt_ms)

    def _check_peer_timeout(self, peer: PeerInfo) -> None:
        """Mark a silent peer unreachable."""
        with self._lock:
            if peer.last_seen is None or peer.status != PeerStatus.REACHABLE:
                return
            elapsed = (datetime.now(timezone.utc) - peer.last_seen).total_seconds()
            if elapsed <= self.peer_timeout:
                return
            peer.status = PeerStatus.UNREACHABLE

        logger.warning(f"Peer {peer.node_id} unreachable (no response for {elapsed:.1f}s)")
        self._emit_disconnected(peer.node_id)

    # =========================================================================
    # Transport interface
    # =========================================================================

    def connected_peers(self) -> List[str]:
        with self._lock:
            return sorted(p.node_id for p in self.peers.values() if p.status == PeerStatus.REACHABLE)

    def send(self, peer_id: str, data: bytes) -> bool:
        """
        Send mesh bytes to a reachable peer in one DATA frame.

        Returns:
            False if the peer is unknown/unreachable, the frame is too large,
            or the socket refused it
        """
        with self._lock:
            peer = self.peers.get(peer_id)
            reachable = peer is not None and peer.status == PeerStatus.REACHABLE
        if not reachable:
            logger.debug(f"Cannot send to {peer_id}: not reachable")
            return False

        frame = self._frame(self.MSG_DATA, data)
        if len(frame) > MAX_DATAGRAM:
            logger.warning(f"Frame to {peer_id} too large ({len(frame)} bytes), dropped")
            return False
        return self._sendto(frame, (peer.address, peer.port))

    def try_reconnect(self, peer_id: str) -> bool:
        """
        Probe a dropped peer with a ping.

        The link only comes back when the PONG arrives; True means the probe
        was sent.
        """
        with self._lock:
            peer = self.peers.get(peer_id)
        if peer is None:
            return False
        return self._send_ping(peer)

    def discover_peers(self, count: int) -> int:
        """Announce ourselves to up to count known peers that are not reachable."""
        with self._lock:
            candidates = [p for p in self.peers.values() if p.status != PeerStatus.REACHABLE]
        probes = 0
        for peer in candidates[:max(0, count)]:
            if self._sendto(self._frame(self.MSG_ANNOUNCE), (peer.address, peer.port)):
                probes += 1
        logger.info(f"Sent {probes} announce probes (wanted {count})")
        return probes

    def get_reachable_peers(self) -> List[PeerInfo]:
        """Get list of currently reachable peers."""
        with self._lock:
            return [p for p in self.peers.values() if p.status == PeerStatus.REACHABLE]

    def get_peer_status_summary(self) -> Dict[str, int]:
        """Get summary of peer statuses."""
        summary = {status.value: 0 for status in PeerStatus}
        with self._lock:
            for peer in self.peers.values():
                summary[peer.status.value] += 1
        return summary

# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Per-node context for meshnode.

MeshNode builds one of each relay-core component for a node and wires
them to its transport:

    transport receive        -> ForwardingLayer.handle_receive
    peer connected           -> HealingMonitor (availability up)
    peer disconnected        -> RouteTable invalidation, queued sends to the
                                peer withdrawn, HealingMonitor (availability down)
    latency sample           -> ReputationEngine (LATENCY event)
    every outgoing copy      -> PriorityDispatcher -> transport send

Nothing here is global; tests and the demo run several nodes in one
process over a SimulatedMesh.
"""

import logging
import uuid
from typing import Callable, Dict, Iterable, Optional

from .config import CoreConfig, NodeConfig, ReputationConfig
from .mesh.dispatcher import PriorityDispatcher, QosClass
from .mesh.forwarding import BROADCAST_ID, ForwardingLayer, MeshMessage, RouteTable
from .mesh.healing import HealingMonitor
from .mesh.ledger import DistributedLedger
from .mesh.peering import UdpTransport
from .mesh.reputation import BehaviorEvent, BehaviorMetric, ReputationEngine
from .mesh.routing import MultiPathResult, MultiPathRouter, PathOutcome, SendStatus
from .mesh.transport import Transport

logger = logging.getLogger(__name__)


class MeshNode:
    """
    One mesh participant: reputation, dispatcher, forwarding, router,
    healing monitor and ledger sharing one transport.

    Attributes:
        node_id: This node's identifier
        transport: Link-layer collaborator
        reputation: ReputationEngine
        dispatcher: PriorityDispatcher
        forwarding: ForwardingLayer
        router: MultiPathRouter
        healing: HealingMonitor
        ledger: DistributedLedger
    """

    def __init__(
        self,
        node_id: str,
        transport: Transport,
        core_config: Optional[CoreConfig] = None,
        reputation_config: Optional[ReputationConfig] = None
    ):
        core = core_config or CoreConfig()
        rep = reputation_config or ReputationConfig()

        self.node_id = node_id
        self.transport = transport
        self.core_config = core

        self.reputation = ReputationEngine(
            node_id=node_id,
            decay_factor=rep.decay_factor,
            weights={BehaviorMetric(name): weight for name, weight in rep.weights.items()},
            latency_ceiling_ms=rep.latency_ceiling_ms,
        )
        self.dispatcher = PriorityDispatcher(
            transport=transport,
            reputation=self.reputation,
            max_concurrent_sends=core.max_concurrent_sends,
            capacity=core.queue_capacity,
            max_retries=core.max_retries,
        )
        self.forwarding = ForwardingLayer(
            node_id=node_id,
            transport=transport,
            dispatcher=self.dispatcher,
            route_table=RouteTable(node_id, route_cache_ttl=core.route_cache_ttl_seconds),
            default_ttl=core.default_ttl,
            processed_capacity=core.processed_capacity,
        )
        self.router = MultiPathRouter(
            node_id=node_id,
            forwarding=self.forwarding,
            reputation=self.reputation,
            blacklist_threshold=core.blacklist_threshold,
            max_paths=core.max_paths,
        )
        self.healing = HealingMonitor(
            transport=transport,
            reputation=self.reputation,
            router=self.router,
            churn_threshold=core.churn_threshold,
            interval=core.health_check_interval_seconds,
            slow_latency_ms=core.slow_latency_ms,
            slow_score_floor=core.slow_score_floor,
        )
        self.ledger = DistributedLedger(
            node_id=node_id,
            witness_threshold=core.witness_threshold,
            reputation=self.reputation,
        )

        transport.on_receive(self.forwarding.handle_receive)
        transport.on_peer_connected(self._handle_peer_connected)
        transport.on_peer_disconnected(self._handle_peer_disconnected)
        transport.on_latency(self._handle_latency)

        self.running = False
        logger.info(f"MeshNode {node_id} assembled")

    @classmethod
    def from_config(cls, config: NodeConfig, transport: Optional[Transport] = None) -> "MeshNode":
        """
        Build a node from configuration.

        Without an explicit transport, a UdpTransport is created from the
        transport section (static peers included).
        """
        if transport is None:
            udp = UdpTransport(
                node_id=config.node_id,
                listen_port=config.transport.listen_port,
                heartbeat_interval=config.transport.heartbeat_interval_seconds,
                peer_timeout=config.transport.peer_timeout_seconds,
            )
            for peer in config.transport.peers:
                udp.add_static_peer(peer.node_id, peer.address, peer.port)
            transport = udp
        return cls(config.node_id, transport, config.core, config.reputation)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the transport, dispatch loop and healing monitor."""
        if self.running:
            return
        self.transport.start()
        self.dispatcher.start()
        self.healing.start()
        self.running = True
        logger.info(f"MeshNode {self.node_id} started")

    def stop(self) -> None:
        if not self.running:
            return
        self.healing.stop()
        self.dispatcher.stop()
        self.transport.stop()
        self.running = False
        logger.info(f"MeshNode {self.node_id} stopped")

    # =========================================================================
    # Transport events
    # =========================================================================

    def _handle_peer_connected(self, peer_id: str) -> None:
        self.healing.handle_peer_connected(peer_id)

    def _handle_peer_disconnected(self, peer_id: str) -> None:
        self.forwarding.route_table.invalidate_peer(peer_id)
        withdrawn = self.dispatcher.withdraw_destination(peer_id)
        if withdrawn:
            logger.info(f"Withdrew {len(withdrawn)} queued sends to {peer_id}")
        self.healing.handle_peer_disconnected(peer_id)

    def _handle_latency(self, peer_id: str, rtt_ms: float) -> None:
        self.reputation.record_event(BehaviorEvent(peer_id, BehaviorMetric.LATENCY, rtt_ms))

    # =========================================================================
    # Messaging
    # =========================================================================

    def send(
        self,
        destination_id: str,
        payload: bytes,
        qos_class: QosClass = QosClass.SYNC,
        max_paths: Optional[int] = None,
        ttl: Optional[int] = None,
        flood_unknown: bool = True
    ) -> MultiPathResult:
        """
        Send a payload to a destination.

        Known routes go through the multi-path router. With no candidate
        route at all (and flood_unknown set) the message is flooded
        instead. Routes that exist but are all blacklisted are reported as
        NO_VIABLE_ROUTE and nothing is sent.
        """
        result = self.router.send(
            destination_id, payload, max_paths=max_paths, qos_class=qos_class, ttl=ttl
        )
        if result.ok or result.rejected or not flood_unknown:
            return result

        flooded = MultiPathResult(
            correlation_id=result.correlation_id,
            destination_id=destination_id,
            status=SendStatus.FLOODED,
            _paths=[PathOutcome(route=(), score=0.0)],
        )

        def _on_complete(success: bool) -> None:
            flooded._complete_path(0, success)

        message = self.forwarding.originate(
            destination_id=destination_id,
            payload=payload,
            qos_class=qos_class,
            ttl=ttl,
            correlation_id=result.correlation_id,
            on_complete=_on_complete,
        )
        flooded._paths[0].message_id = message.message_id
        logger.info(f"No known route to {destination_id}, flooding {message.message_id}")
        return flooded

    def broadcast(self, payload: bytes, qos_class: QosClass = QosClass.SYNC, ttl: Optional[int] = None) -> MeshMessage:
        """Flood a payload to every node within ttl hops."""
        return self.forwarding.originate(
            destination_id=BROADCAST_ID,
            payload=payload,
            qos_class=qos_class,
            ttl=ttl,
            correlation_id=uuid.uuid4().hex,
        )

    def on_deliver(self, callback: Callable[[MeshMessage], None]) -> None:
        """Register a callback for messages delivered to this node."""
        self.forwarding.on_deliver(callback)

    def status(self) -> Dict:
        return {
            "node_id": self.node_id,
            "running": self.running,
            "connected_peers": self.transport.connected_peers(),
            "forwarding": self.forwarding.get_status(),
            "routing": self.router.get_routing_status(),
            "dispatcher": self.dispatcher.get_statistics(),
            "reputation": self.reputation.get_stats(),
            "healing": self.healing.get_status(),
            "ledger": self.ledger.get_stats(),
        }


def settle(nodes: Iterable[MeshNode], max_rounds: int = 1000) -> int:
    """
    Drain the dispatchers of stopped nodes until no node has work left.

    For in-process meshes (SimulatedMesh) driven without background
    threads: delivery is synchronous, so each drained send may queue work
    on the receiving node.

    Returns:
        Total send attempts made
    """
    nodes = list(nodes)
    total = 0
    for _ in range(max_rounds):
        attempts = sum(node.dispatcher.drain() for node in nodes)
        if attempts == 0:
            break
        total += attempts
    else:
        logger.warning(f"Mesh did not settle within {max_rounds} rounds")
    return total

# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Integration tests for complete MeshNode scenarios.

Runs several nodes over a SimulatedMesh: flooding, multi-path sends around
a forging peer, churn handling and ledger exchange between nodes.
"""

import pytest

from meshnode.config import CoreConfig, NodeConfig
from meshnode.mesh.crypto import KeyPair
from meshnode.mesh.dispatcher import QosClass
from meshnode.mesh.healing import HealState
from meshnode.mesh.ledger import CoinTransaction, EntryStatus
from meshnode.mesh.reputation import BehaviorEvent, BehaviorMetric
from meshnode.mesh.routing import SendStatus
from meshnode.mesh.transport import SimulatedMesh
from meshnode.node import MeshNode, settle


NAMES = ["alpha", "bravo", "charlie", "delta", "echo"]
LINKS = [
    ("alpha", "bravo"),
    ("bravo", "charlie"),
    ("charlie", "delta"),
    ("delta", "alpha"),
    ("alpha", "echo"),
    ("echo", "charlie"),
]


@pytest.fixture
def ring(build_mesh):
    """Five nodes: a four-node ring with a shortcut through echo."""
    return build_mesh(NAMES, LINKS)


def _report_forgeries(node, peer_id, count=6):
    for _ in range(count):
        node.reputation.record_event(BehaviorEvent(peer_id, BehaviorMetric.FORGERY_ATTEMPT, 1.0))


def _discover(nodes, origin, destination):
    nodes[origin].router.discover_routes(destination)
    settle(nodes.values())


class TestFlooding:
    """Broadcast behaviour across the whole mesh."""

    def test_broadcast_reaches_every_node_once(self, ring, inboxes):
        boxes = inboxes(ring)

        ring["alpha"].broadcast(b"position", qos_class=QosClass.REAL_TIME)
        settle(ring.values())

        for name in NAMES[1:]:
            assert [m.payload for m in boxes[name]] == [b"position"]
        assert all(node.forwarding.metrics["messages_relayed"] <= 1 for node in ring.values())

    def test_send_without_routes_floods(self, ring, inboxes):
        boxes = inboxes(ring)

        result = ring["alpha"].send("charlie", b"hello")
        settle(ring.values())

        assert result.status == SendStatus.FLOODED
        assert result.ok
        assert len(boxes["charlie"]) == 1


class TestMultiPath:
    """Multi-path sends with reputation filtering."""

    def test_discovered_routes_used_in_parallel(self, ring, inboxes):
        boxes = inboxes(ring)
        _discover(ring, "alpha", "charlie")

        result = ring["alpha"].send("charlie", b"orders", qos_class=QosClass.CRITICAL)
        settle(ring.values())

        assert result.status == SendStatus.SENT
        assert {r.hops[0] for r in result.routes} == {"bravo", "delta", "echo"}
        assert [m.payload for m in boxes["charlie"]] == [b"orders"]
        assert ring["charlie"].forwarding.metrics["duplicate_deliveries"] == 2
        assert result.succeeded == 3

    def test_forging_peer_routed_around(self, ring, inboxes):
        boxes = inboxes(ring)
        _discover(ring, "alpha", "charlie")
        alpha = ring["alpha"]
        _report_forgeries(alpha, "echo")

        result = alpha.send("charlie", b"orders")
        settle(ring.values())

        assert result.status == SendStatus.SENT
        assert result.rejected >= 1
        assert all("echo" not in r.hops for r in result.routes)
        assert len(boxes["charlie"]) == 1
        assert boxes["echo"] == []

    def test_all_routes_blacklisted_sends_nothing(self, ring):
        _discover(ring, "alpha", "charlie")
        alpha = ring["alpha"]
        for peer in ("bravo", "delta", "echo"):
            _report_forgeries(alpha, peer)
        sent_before = alpha.dispatcher.get_statistics()["enqueued"]

        result = alpha.send("charlie", b"orders")

        assert result.status == SendStatus.NO_VIABLE_ROUTE
        assert alpha.dispatcher.get_statistics()["enqueued"] == sent_before


class TestChurn:
    """Link loss, route invalidation and healing."""

    def test_disconnect_invalidates_routes_and_withdraws_sends(self, mesh, ring):
        _discover(ring, "alpha", "charlie")
        alpha = ring["alpha"]
        alpha.send("charlie", b"queued")

        mesh.unlink("alpha", "echo")

        candidates = alpha.router.candidate_routes("charlie")
        assert all(route[0] != "echo" for route in candidates)
        assert all(item.destination_id != "echo" for item in alpha.dispatcher.items_by_class(QosClass.SYNC))

    def test_heavy_churn_heals_aggressively(self, mesh, ring):
        bravo = ring["bravo"]
        mesh.take_offline("charlie")
        mesh.unlink("bravo", "alpha")

        report = bravo.healing.run_cycle()

        assert report.action == HealState.AGGRESSIVE_HEAL
        assert report.churn_rate == pytest.approx(1.0)

        mesh.bring_online("charlie")
        assert bravo.transport.try_reconnect("charlie")
        assert "charlie" in bravo.transport.connected_peers()

    def test_single_drop_soft_heals(self, build_mesh, mesh):
        names = ["hub"] + [f"leaf{i}" for i in range(6)]
        nodes = build_mesh(names, [("hub", leaf) for leaf in names[1:]])
        mesh.unlink("hub", "leaf0")

        report = nodes["hub"].healing.run_cycle()

        assert report.action == HealState.SOFT_HEAL
        assert report.reconnected == ["leaf0"]
        assert "leaf0" in nodes["hub"].transport.connected_peers()

    def test_latency_samples_feed_reputation(self, mesh, ring):
        mesh.set_latency("alpha", "bravo", 900.0)

        ring["alpha"].send("bravo", b"x")
        settle(ring.values())

        assert ring["alpha"].reputation.get_score("bravo").latency_ms == pytest.approx(900.0)


class TestLedgerExchange:
    """Ledger entries passed between nodes."""

    def test_pending_accept_upgrade_and_witnesses(self, ring):
        alpha, delta = ring["alpha"], ring["delta"]
        alpha_keys, delta_keys = KeyPair.generate(), KeyPair.generate()

        entry = alpha.ledger.append(CoinTransaction.create("alpha", "delta", 12.5), None, alpha_keys)
        assert delta.ledger.ingest(entry, alpha_keys.public_key).ok

        accepted = delta.ledger.accept(entry, delta_keys)
        assert alpha.ledger.ingest(accepted, alpha_keys.public_key, delta_keys.public_key).ok
        assert alpha.ledger.latest("alpha").status == EntryStatus.ACCEPTED

        for witness in ("bravo", "charlie", "echo"):
            alpha.ledger.add_witness(accepted, witness)
        assert alpha.ledger.has_sufficient_propagation(accepted)

    def test_tampered_entry_lowers_sender_reputation(self, ring):
        alpha, delta = ring["alpha"], ring["delta"]
        keys = KeyPair.generate()
        entry = alpha.ledger.append(CoinTransaction.create("alpha", "delta", 1.0), None, keys)
        before = delta.reputation.get_score_value("alpha")

        entry.amount = 100.0
        assert not delta.ledger.verify(entry, keys.public_key)

        assert delta.reputation.get_score_value("alpha") < before


class TestNodeAssembly:
    """Construction from configuration and status reporting."""

    def test_from_config_uses_core_options(self):
        config = NodeConfig(node_id="solo", core=CoreConfig(default_ttl=5, max_paths=2, witness_threshold=4))
        node = MeshNode.from_config(config, transport=SimulatedMesh().add_node("solo"))

        assert node.forwarding.default_ttl == 5
        assert node.router.max_paths == 2
        assert node.ledger.witness_threshold == 4

    def test_from_config_builds_udp_transport(self):
        config = NodeConfig(
            node_id="solo",
            transport={"listen_port": 9001, "peers": [{"node_id": "peer", "address": "10.0.0.2"}]},
        )

        node = MeshNode.from_config(config)

        assert node.transport.listen_port == 9001
        assert "peer" in node.transport.peers

    def test_status_sections(self, ring):
        status = ring["alpha"].status()

        assert status["node_id"] == "alpha"
        assert sorted(status["connected_peers"]) == ["bravo", "delta", "echo"]
        for section in ("forwarding", "routing", "dispatcher", "reputation", "healing", "ledger"):
            assert section in status

    def test_start_and_stop_with_threads(self, ring, inboxes):
        boxes = inboxes(ring)
        for node in ring.values():
            node.start()
        try:
            ring["alpha"].broadcast(b"live")
            for _ in range(5):
                for node in ring.values():
                    node.dispatcher.wait_idle(timeout=2.0)
        finally:
            for node in ring.values():
                node.stop()

        assert all(len(boxes[name]) == 1 for name in NAMES[1:])

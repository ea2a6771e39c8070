# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Pytest fixtures for meshnode relay core tests.

Provides simulated meshes, mock transports and signing keys.
"""

import pytest
from unittest.mock import Mock
import sys
import os

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from meshnode.mesh.crypto import KeyPair
from meshnode.mesh.dispatcher import PriorityDispatcher
from meshnode.mesh.forwarding import ForwardingLayer
from meshnode.mesh.ledger import DistributedLedger
from meshnode.mesh.reputation import ReputationEngine
from meshnode.mesh.routing import MultiPathRouter
from meshnode.mesh.transport import SimulatedMesh, Transport
from meshnode.node import MeshNode


@pytest.fixture
def reputation():
    """Reputation engine with default weights and decay."""
    return ReputationEngine(node_id="node-001")


@pytest.fixture
def mock_transport():
    """Mock transport with three connected peers and successful sends."""
    transport = Mock(spec=Transport)
    transport.node_id = "node-001"
    transport.connected_peers = Mock(return_value=["node-002", "node-003", "node-004"])
    transport.send = Mock(return_value=True)
    transport.try_reconnect = Mock(return_value=True)
    transport.discover_peers = Mock(return_value=0)
    return transport


@pytest.fixture
def dispatcher(mock_transport, reputation):
    """Dispatcher over the mock transport (driven with drain())."""
    return PriorityDispatcher(
        transport=mock_transport,
        reputation=reputation,
        max_concurrent_sends=2,
        capacity=10,
        max_retries=2,
    )


@pytest.fixture
def forwarding(mock_transport, dispatcher):
    """Forwarding layer for node-001 over the mock transport."""
    return ForwardingLayer(
        node_id="node-001",
        transport=mock_transport,
        dispatcher=dispatcher,
        default_ttl=3,
        processed_capacity=100,
    )


@pytest.fixture
def router(forwarding, reputation):
    """Multi-path router for node-001."""
    return MultiPathRouter(
        node_id="node-001",
        forwarding=forwarding,
        reputation=reputation,
        blacklist_threshold=0.10,
        max_paths=3,
    )


@pytest.fixture
def mesh():
    """Empty simulated mesh."""
    return SimulatedMesh()


@pytest.fixture
def build_mesh(mesh):
    """
    Factory building MeshNodes over the simulated mesh.

    Usage:
        nodes = build_mesh(["a", "b", "c"], [("a", "b"), ("b", "c")])
    """
    def _build(names, links, **node_kwargs):
        nodes = {}
        for name in names:
            nodes[name] = MeshNode(name, mesh.add_node(name), **node_kwargs)
        for link in links:
            mesh.link(*link)
        return nodes
    return _build


@pytest.fixture
def inboxes():
    """Factory attaching a delivery inbox to each node."""
    def _attach(nodes):
        boxes = {name: [] for name in nodes}
        for name, node in nodes.items():
            node.on_deliver(boxes[name].append)
        return boxes
    return _attach


@pytest.fixture
def sender_keys():
    return KeyPair.from_seed(b"s" * 32)


@pytest.fixture
def receiver_keys():
    return KeyPair.from_seed(b"r" * 32)


@pytest.fixture
def ledger():
    """Ledger for node alpha with its own reputation engine."""
    return DistributedLedger(
        node_id="alpha",
        witness_threshold=3,
        reputation=ReputationEngine(node_id="alpha"),
    )

# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Relay core for meshnode.

This package provides the pieces every mesh node runs:
- Peer trust scoring (reputation.py)
- Priority-ordered, rate-limited sending (dispatcher.py)
- TTL-bounded relay with duplicate suppression (forwarding.py)
- Reputation-aware multi-path routing (routing.py)
- Churn-driven auto-healing (healing.py)
- Causally-ordered signed ledger (ledger.py, crypto.py)
- Transports: in-process simulation (transport.py) and UDP (peering.py)
"""

from .crypto import KeyPair, verify_signature
from .dispatcher import EnqueueResult, PriorityDispatcher, QosClass, QueuedItem
from .errors import (
    InvalidMessageError,
    LedgerError,
    LedgerIntegrityError,
    LedgerStateError,
    MeshError,
    NoViableRouteError,
)
from .forwarding import (
    BROADCAST_ID,
    ForwardingLayer,
    MeshMessage,
    MessageKind,
    ProcessedMessageSet,
    RelayAction,
    RoutePath,
    RouteTable,
)
from .healing import HealingMonitor, HealingReport, HealState
from .ledger import (
    CoinTransaction,
    DistributedLedger,
    EntryStatus,
    LamportClock,
    LamportTimestamp,
    LedgerEntry,
    VerificationFailure,
    VerificationResult,
)
from .peering import PeerInfo, PeerStatus, UdpTransport
from .reputation import BehaviorEvent, BehaviorMetric, ReputationEngine, ReputationScore
from .routing import MultiPathResult, MultiPathRouter, PathOutcome, ScoredRoute, SendStatus
from .transport import InMemoryTransport, SimulatedMesh, Transport

__all__ = [
    "KeyPair",
    "verify_signature",
    "EnqueueResult",
    "PriorityDispatcher",
    "QosClass",
    "QueuedItem",
    "InvalidMessageError",
    "LedgerError",
    "LedgerIntegrityError",
    "LedgerStateError",
    "MeshError",
    "NoViableRouteError",
    "BROADCAST_ID",
    "ForwardingLayer",
    "MeshMessage",
    "MessageKind",
    "ProcessedMessageSet",
    "RelayAction",
    "RoutePath",
    "RouteTable",
    "HealingMonitor",
    "HealingReport",
    "HealState",
    "CoinTransaction",
    "DistributedLedger",
    "EntryStatus",
    "LamportClock",
    "LamportTimestamp",
    "LedgerEntry",
    "VerificationFailure",
    "VerificationResult",
    "PeerInfo",
    "PeerStatus",
    "UdpTransport",
    "BehaviorEvent",
    "BehaviorMetric",
    "ReputationEngine",
    "ReputationScore",
    "MultiPathResult",
    "MultiPathRouter",
    "PathOutcome",
    "ScoredRoute",
    "SendStatus",
    "InMemoryTransport",
    "SimulatedMesh",
    "Transport",
]

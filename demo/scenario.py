#!/usr/bin/env python3
# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
meshnode Demo Scenario
Simulates a small cyclic mesh in one process: flooding, multi-path routing
around a forging peer, a churn event that triggers healing, and a ledger
exchange between two nodes.

Usage:
    python demo/scenario.py
"""
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

sys.path.insert(0, str(Path(__file__).parent.parent))

from meshnode.mesh import (  # noqa: E402
    BehaviorEvent,
    BehaviorMetric,
    CoinTransaction,
    KeyPair,
    QosClass,
    SimulatedMesh,
)
from meshnode.node import MeshNode, settle  # noqa: E402

# Configure logging
logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, markup=True)]
)
log = logging.getLogger("demo")
log.setLevel(logging.INFO)
console = Console()

# Scenario topology: a ring alpha-bravo-charlie-delta with a shortcut
# through echo, which will turn out to forge ledger entries.
NODES = ["alpha", "bravo", "charlie", "delta", "echo"]
LINKS = [
    ("alpha", "bravo", 40.0),
    ("bravo", "charlie", 35.0),
    ("charlie", "delta", 50.0),
    ("delta", "alpha", 45.0),
    ("alpha", "echo", 10.0),
    ("echo", "charlie", 10.0),
]


class DemoScenario:
    def __init__(self):
        self.mesh = SimulatedMesh()
        self.nodes = {}
        self.inbox = {name: [] for name in NODES}

    def build(self):
        """Create every node and bring up the links."""
        for name in NODES:
            node = MeshNode(name, self.mesh.add_node(name))
            node.on_deliver(lambda message, name=name: self.inbox[name].append(message))
            self.nodes[name] = node
        for a, b, latency in LINKS:
            self.mesh.link(a, b, latency_ms=latency)
        log.info(f"Built mesh: {len(NODES)} nodes, {len(LINKS)} links")

    def settle(self):
        return settle(self.nodes.values())

    def flood(self):
        console.rule("[bold]1. Flood")
        self.nodes["alpha"].broadcast(b"position report", qos_class=QosClass.REAL_TIME)
        attempts = self.settle()
        reached = [n for n in NODES if n != "alpha" and self.inbox[n]]
        log.info(f"Broadcast reached {reached} in {attempts} sends")
        for name in NODES:
            relayed = self.nodes[name].forwarding.get_metrics()["messages_relayed"]
            dropped = self.nodes[name].forwarding.get_metrics()["duplicates_dropped"]
            log.info(f"  {name}: relayed={relayed} duplicates_dropped={dropped}")

    def multipath(self, label):
        alpha = self.nodes["alpha"]
        result = alpha.send("charlie", f"orders ({label})".encode(), qos_class=QosClass.CRITICAL)
        self.settle()

        table = Table(title=f"alpha -> charlie ({label})")
        table.add_column("route")
        table.add_column("score", justify="right")
        table.add_column("sent")
        for outcome in result.outcomes(timeout=0):
            table.add_row(" -> ".join(outcome.route) or "(flood)", f"{outcome.score:.3f}", str(outcome.success))
        console.print(table)
        log.info(f"Status {result.status.value}, {result.rejected} routes excluded")

    def forgery(self):
        console.rule("[bold]2. Multi-path around a forging peer")
        self.nodes["alpha"].router.discover_routes("charlie")
        self.settle()
        self.multipath("echo trusted")

        alpha = self.nodes["alpha"]
        forgeries = 0
        while not alpha.reputation.is_blacklisted("echo", alpha.router.blacklist_threshold):
            alpha.reputation.record_event(BehaviorEvent("echo", BehaviorMetric.FORGERY_ATTEMPT, 1.0))
            forgeries += 1
        score = alpha.reputation.get_score_value("echo")
        log.info(f"alpha saw {forgeries} forgeries from echo, score now [bold red]{score:.3f}[/bold red]")
        self.multipath("echo blacklisted")

    def churn(self):
        console.rule("[bold]3. Churn and healing")
        bravo = self.nodes["bravo"]
        self.mesh.take_offline("charlie")
        self.mesh.unlink("bravo", "alpha")
        report = bravo.healing.run_cycle()
        log.info(
            f"bravo: churn {report.churn_rate:.0%}, action [bold]{report.action.value}[/bold], "
            f"dropped={report.dropped}"
        )
        self.mesh.bring_online("charlie")
        report = bravo.healing.run_cycle()
        log.info(f"bravo next cycle: action {report.action.value}")
        bravo.transport.try_reconnect("charlie")
        bravo.transport.try_reconnect("alpha")
        log.info(f"bravo links after healing: {bravo.transport.connected_peers()}")
        self.settle()

    def ledger(self):
        console.rule("[bold]4. Ledger exchange")
        alpha, delta = self.nodes["alpha"], self.nodes["delta"]
        alpha_keys, delta_keys = KeyPair.generate(), KeyPair.generate()

        tx = CoinTransaction.create("alpha", "delta", 12.5, coin_type_id="relay-credit")
        entry = alpha.ledger.append(tx, None, alpha_keys)
        delta_copy = delta.ledger.ingest(entry, alpha_keys.public_key)
        log.info(f"delta verified pending entry: {delta_copy.ok}")

        accepted = delta.ledger.accept(entry, delta_keys)
        upgrade = alpha.ledger.ingest(accepted, alpha_keys.public_key, delta_keys.public_key)
        latest = alpha.ledger.latest("alpha")
        log.info(f"alpha took the accepted copy: ok={upgrade.ok}, local status {latest.status.value}")

        for witness in ("bravo", "charlie", "echo"):
            alpha.ledger.add_witness(accepted, witness)
        log.info(f"Durable after witnesses: {alpha.ledger.has_sufficient_propagation(accepted)}")

        forged = accepted.copy()
        forged.amount = 1250.0
        result = delta.ledger.check(forged, alpha_keys.public_key, delta_keys.public_key)
        log.info(f"Tampered copy rejected: {result.failure.value}")

    def summary(self):
        console.rule("[bold]Summary")
        table = Table()
        table.add_column("node")
        table.add_column("peers")
        table.add_column("sent", justify="right")
        table.add_column("relayed", justify="right")
        table.add_column("delivered", justify="right")
        for name, node in self.nodes.items():
            status = node.status()
            table.add_row(
                name,
                ", ".join(status["connected_peers"]),
                str(status["dispatcher"]["sent"]),
                str(status["forwarding"]["metrics"]["messages_relayed"]),
                str(status["forwarding"]["metrics"]["delivered"]),
            )
        console.print(table)


if __name__ == "__main__":
    console.print("[bold green]meshnode Demo Scenario[/bold green]")
    scenario = DemoScenario()
    scenario.build()
    scenario.flood()
    scenario.forgery()
    scenario.churn()
    scenario.ledger()
    scenario.summary()

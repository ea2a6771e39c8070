# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Causally-ordered distributed ledger for the meshnode relay core.

Each sender's transactions form a hash-linked chain of LedgerEntry records:

- sequence numbers run 1, 2, 3, ... per sender with no gaps
- previous_entry_hash of entry N is the entry_hash of entry N-1
- signatures cover a canonical field list (not the hash)
- entry_hash covers the same fields plus both signatures and the status
- nonces never repeat across verified entries

There is no consensus. Lamport timestamps give a partial causal order
across senders, and an entry is considered durable once enough distinct
peers have witnessed it. Propagation witnesses only grow and are kept out
of the hash so adding one never invalidates the chain.

Appending (this node's own entries) and verifying (entries from anyone,
including this node) keep separate state, so a node verifies its own
entries exactly as a peer would.
"""

import json
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, TYPE_CHECKING

from .crypto import KeyPair, sha256_hex, verify_signature
from .errors import LedgerIntegrityError, LedgerStateError
from .reputation import BehaviorEvent, BehaviorMetric

if TYPE_CHECKING:
    from .reputation import ReputationEngine

logger = logging.getLogger(__name__)


DEFAULT_WITNESS_THRESHOLD = 3


# =============================================================================
# Lamport clock
# =============================================================================

@dataclass(frozen=True, order=True)
class LamportTimestamp:
    """Logical time of one event; ordered by (counter, node_id)."""
    counter: int
    node_id: str

    def to_dict(self) -> Dict:
        return {"counter": self.counter, "node_id": self.node_id}

    @classmethod
    def from_dict(cls, data: Dict) -> "LamportTimestamp":
        return cls(counter=int(data["counter"]), node_id=str(data["node_id"]))


class LamportClock:
    """Per-node logical clock."""

    def __init__(self, node_id: str, counter: int = 0):
        self.node_id = node_id
        self._counter = counter
        self._lock = threading.Lock()

    @property
    def current(self) -> LamportTimestamp:
        with self._lock:
            return LamportTimestamp(self._counter, self.node_id)

    def tick(self) -> LamportTimestamp:
        """Advance for a local event."""
        with self._lock:
            self._counter += 1
            return LamportTimestamp(self._counter, self.node_id)

    def update(self, received: LamportTimestamp) -> LamportTimestamp:
        """Merge a peer's timestamp: counter = max(local, received) + 1."""
        with self._lock:
            self._counter = max(self._counter, received.counter) + 1
            return LamportTimestamp(self._counter, self.node_id)


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class CoinTransaction:
    """A transfer to be recorded in the ledger."""
    transaction_id: str
    sender_id: str
    receiver_id: str
    amount: float
    coin_type_id: str = "default"

    @classmethod
    def create(cls, sender_id: str, receiver_id: str, amount: float, coin_type_id: str = "default"):
        return cls(
            transaction_id=uuid.uuid4().hex,
            sender_id=sender_id,
            receiver_id=receiver_id,
            amount=amount,
            coin_type_id=coin_type_id,
        )


class EntryStatus(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CONFLICTED = "conflicted"


@dataclass
class LedgerEntry:
    """
    One signed, hash-linked ledger record.

    Everything except receiver_signature, status and propagation_witnesses
    is fixed once the entry is sealed.
    """
    entry_id: str
    sequence_number: int
    transaction_id: str
    sender_id: str
    receiver_id: str
    amount: float
    coin_type_id: str
    lamport_timestamp: LamportTimestamp
    wall_clock_time: str
    nonce: str
    previous_entry_hash: Optional[str] = None
    sender_signature: str = ""
    receiver_signature: Optional[str] = None
    entry_hash: str = ""
    propagation_witnesses: List[str] = field(default_factory=list)
    status: EntryStatus = EntryStatus.PENDING

    def signing_bytes(self) -> bytes:
        """Canonical bytes covered by both signatures."""
        fields = [
            self.entry_id,
            self.sequence_number,
            self.transaction_id,
            self.sender_id,
            self.receiver_id,
            repr(float(self.amount)),
            self.coin_type_id,
            self.lamport_timestamp.counter,
            self.lamport_timestamp.node_id,
            self.wall_clock_time,
            self.previous_entry_hash or "",
            self.nonce,
        ]
        return json.dumps(fields, separators=(",", ":")).encode("utf-8")

    def hash_bytes(self) -> bytes:
        """Canonical bytes covered by entry_hash."""
        fields = [
            self.signing_bytes().decode("utf-8"),
            self.sender_signature,
            self.receiver_signature or "",
            self.status.value,
        ]
        return json.dumps(fields, separators=(",", ":")).encode("utf-8")

    def compute_hash(self) -> str:
        return sha256_hex(self.hash_bytes())

    def seal(self, sender_key: KeyPair, receiver_key: Optional[KeyPair] = None) -> "LedgerEntry":
        """Sign with the sender (and receiver, if given), set status and hash."""
        payload = self.signing_bytes()
        self.sender_signature = sender_key.sign(payload)
        if receiver_key is not None:
            self.receiver_signature = receiver_key.sign(payload)
            self.status = EntryStatus.ACCEPTED
        else:
            self.receiver_signature = None
            self.status = EntryStatus.PENDING
        self.entry_hash = self.compute_hash()
        return self

    @property
    def is_accepted(self) -> bool:
        return self.status == EntryStatus.ACCEPTED and self.receiver_signature is not None

    def copy(self) -> "LedgerEntry":
        return replace(self, propagation_witnesses=list(self.propagation_witnesses))

    def to_dict(self) -> Dict:
        return {
            "entry_id": self.entry_id,
            "sequence_number": self.sequence_number,
            "transaction_id": self.transaction_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount": self.amount,
            "coin_type_id": self.coin_type_id,
            "lamport_timestamp": self.lamport_timestamp.to_dict(),
            "wall_clock_time": self.wall_clock_time,
            "sender_signature": self.sender_signature,
            "receiver_signature": self.receiver_signature,
            "previous_entry_hash": self.previous_entry_hash,
            "entry_hash": self.entry_hash,
            "propagation_witnesses": list(self.propagation_witnesses),
            "nonce": self.nonce,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LedgerEntry":
        """
        Raises:
            LedgerIntegrityError: If required fields are missing or malformed
        """
        try:
            return cls(
                entry_id=str(data["entry_id"]),
                sequence_number=int(data["sequence_number"]),
                transaction_id=str(data["transaction_id"]),
                sender_id=str(data["sender_id"]),
                receiver_id=str(data["receiver_id"]),
                amount=float(data["amount"]),
                coin_type_id=str(data["coin_type_id"]),
                lamport_timestamp=LamportTimestamp.from_dict(data["lamport_timestamp"]),
                wall_clock_time=str(data["wall_clock_time"]),
                nonce=str(data["nonce"]),
                previous_entry_hash=data.get("previous_entry_hash"),
                sender_signature=str(data.get("sender_signature", "")),
                receiver_signature=data.get("receiver_signature"),
                entry_hash=str(data.get("entry_hash", "")),
                propagation_witnesses=[str(w) for w in data.get("propagation_witnesses", [])],
                status=EntryStatus(data.get("status", EntryStatus.PENDING.value)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise LedgerIntegrityError(VerificationFailure.MALFORMED, data.get("entry_id")) from e


# =============================================================================
# Verification
# =============================================================================

class VerificationFailure(Enum):
    """Why an entry was rejected."""
    MALFORMED = "malformed"
    HASH_MISMATCH = "hash_mismatch"
    BAD_SENDER_SIGNATURE = "bad_sender_signature"
    BAD_RECEIVER_SIGNATURE = "bad_receiver_signature"
    MISSING_RECEIVER_KEY = "missing_receiver_key"
    NONCE_REPLAY = "nonce_replay"
    SEQUENCE_GAP = "sequence_gap"
    CHAIN_BROKEN = "chain_broken"
    CONFLICT = "conflict"
    INVALID_STATUS = "invalid_status"


# failures charged to the claimed sender
_FORGERY_FAILURES = {
    VerificationFailure.HASH_MISMATCH,
    VerificationFailure.BAD_SENDER_SIGNATURE,
}


@dataclass
class VerificationResult:
    """Typed outcome of verifying one entry."""
    entry_id: str
    failure: Optional[VerificationFailure] = None
    upgraded: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    def raise_for_failure(self) -> "VerificationResult":
        """
        Raises:
            LedgerIntegrityError: If the entry was rejected
        """
        if self.failure is not None:
            raise LedgerIntegrityError(self.failure, self.entry_id)
        return self


@dataclass
class _VerifiedTip:
    entry_id: str
    sequence_number: int
    nonce: str
    entry_hash: str
    previous_entry_hash: Optional[str]
    signing_digest: str
    status: EntryStatus


class _ChainVerifier:
    """Last verified entry per sender plus every verified nonce."""

    def __init__(self):
        self.tips: Dict[str, _VerifiedTip] = {}
        self.nonces: Dict[str, str] = {}

    def check(
        self,
        entry: LedgerEntry,
        sender_public_key: str,
        receiver_public_key: Optional[str] = None,
        commit: bool = True
    ) -> VerificationResult:
        result = VerificationResult(entry_id=entry.entry_id)

        if entry.compute_hash() != entry.entry_hash:
            result.failure = VerificationFailure.HASH_MISMATCH
            return result

        if entry.status not in (EntryStatus.PENDING, EntryStatus.ACCEPTED):
            result.failure = VerificationFailure.INVALID_STATUS
            return result

        payload = entry.signing_bytes()
        if not verify_signature(sender_public_key, payload, entry.sender_signature):
            result.failure = VerificationFailure.BAD_SENDER_SIGNATURE
            return result

        if entry.status == EntryStatus.ACCEPTED or entry.receiver_signature is not None:
            if entry.status != EntryStatus.ACCEPTED or not entry.receiver_signature:
                result.failure = VerificationFailure.BAD_RECEIVER_SIGNATURE
                return result
            if not receiver_public_key:
                result.failure = VerificationFailure.MISSING_RECEIVER_KEY
                return result
            if not verify_signature(receiver_public_key, payload, entry.receiver_signature):
                result.failure = VerificationFailure.BAD_RECEIVER_SIGNATURE
                return result

        digest = sha256_hex(payload)
        tip = self.tips.get(entry.sender_id)

        if self._is_upgrade(tip, entry, digest):
            result.upgraded = True
            if commit:
                self._commit(entry, digest)
            return result

        if entry.nonce in self.nonces:
            result.failure = VerificationFailure.NONCE_REPLAY
            return result

        last_sequence = tip.sequence_number if tip else 0
        if tip is not None and entry.sequence_number == last_sequence and entry.entry_id != tip.entry_id:
            result.failure = VerificationFailure.CONFLICT
            return result
        if entry.sequence_number != last_sequence + 1:
            result.failure = VerificationFailure.SEQUENCE_GAP
            return result

        expected_previous = tip.entry_hash if tip else None
        if (entry.previous_entry_hash or None) != expected_previous:
            result.failure = VerificationFailure.CHAIN_BROKEN
            return result

        if commit:
            self._commit(entry, digest)
        return result

    def promote(self, entry: LedgerEntry) -> bool:
        """Replace a verified pending tip with its accepted form."""
        digest = sha256_hex(entry.signing_bytes())
        if not self._is_upgrade(self.tips.get(entry.sender_id), entry, digest):
            return False
        self._commit(entry, digest)
        return True

    @staticmethod
    def _is_upgrade(tip: Optional[_VerifiedTip], entry: LedgerEntry, digest: str) -> bool:
        return (
            tip is not None
            and tip.status == EntryStatus.PENDING
            and entry.status == EntryStatus.ACCEPTED
            and tip.entry_id == entry.entry_id
            and tip.signing_digest == digest
        )

    def _commit(self, entry: LedgerEntry, digest: str) -> None:
        self.tips[entry.sender_id] = _VerifiedTip(
            entry_id=entry.entry_id,
            sequence_number=entry.sequence_number,
            nonce=entry.nonce,
            entry_hash=entry.entry_hash,
            previous_entry_hash=entry.previous_entry_hash,
            signing_digest=digest,
            status=entry.status,
        )
        self.nonces[entry.nonce] = entry.entry_id


# =============================================================================
# Ledger
# =============================================================================

class DistributedLedger:
    """
    Per-node ledger: this node's appended entries and verified copies of
    everyone else's.

    Attributes:
        node_id: This node's identifier
        witness_threshold: Distinct witnesses needed for an entry to be durable
        clock: Lamport clock advanced by appends and ingested entries
        stats: Counters for appended, verified and rejected entries
    """

    def __init__(
        self,
        node_id: str,
        witness_threshold: int = DEFAULT_WITNESS_THRESHOLD,
        reputation: Optional["ReputationEngine"] = None
    ):
        self.node_id = node_id
        self.witness_threshold = max(1, witness_threshold)
        self.reputation = reputation
        self.clock = LamportClock(node_id)

        self._chains: Dict[str, List[LedgerEntry]] = {}
        self._used_nonces: Set[str] = set()
        self._transactions: Set[str] = set()
        self._verifier = _ChainVerifier()
        self._lock = threading.Lock()

        self.stats = {
            "appended": 0,
            "accepted": 0,
            "verified": 0,
            "rejected": 0,
        }

        logger.info(
            f"DistributedLedger initialized: node_id={node_id}, "
            f"witness_threshold={self.witness_threshold}"
        )

    # =========================================================================
    # Append / accept
    # =========================================================================

    def append(
        self,
        transaction: CoinTransaction,
        lamport_timestamp: Optional[LamportTimestamp],
        sender_key: KeyPair,
        receiver_key: Optional[KeyPair] = None
    ) -> LedgerEntry:
        """
        Append a transaction to its sender's chain.

        Args:
            transaction: The transfer to record
            lamport_timestamp: Causal time of the transaction (None: tick the local clock)
            sender_key: Sender's signing key
            receiver_key: Receiver's signing key, to create the entry already accepted

        Returns:
            A copy of the sealed entry

        Raises:
            LedgerStateError: If the transaction id was already recorded
        """
        if lamport_timestamp is None:
            lamport_timestamp = self.clock.tick()
        else:
            self.clock.update(lamport_timestamp)

        with self._lock:
            if transaction.transaction_id in self._transactions:
                raise LedgerStateError(
                    f"Transaction {transaction.transaction_id} already recorded"
                )

            chain = self._chains.setdefault(transaction.sender_id, [])
            previous = chain[-1] if chain else None
            nonce = secrets.token_hex(16)
            while nonce in self._used_nonces:
                nonce = secrets.token_hex(16)

            entry = LedgerEntry(
                entry_id=uuid.uuid4().hex,
                sequence_number=previous.sequence_number + 1 if previous else 1,
                transaction_id=transaction.transaction_id,
                sender_id=transaction.sender_id,
                receiver_id=transaction.receiver_id,
                amount=float(transaction.amount),
                coin_type_id=transaction.coin_type_id,
                lamport_timestamp=lamport_timestamp,
                wall_clock_time=datetime.now(timezone.utc).isoformat(),
                nonce=nonce,
                previous_entry_hash=previous.entry_hash if previous else None,
            ).seal(sender_key, receiver_key)

            chain.append(entry)
            self._used_nonces.add(nonce)
            self._transactions.add(transaction.transaction_id)
            self.stats["appended"] += 1

        logger.info(
            f"Ledger entry {entry.sequence_number} appended for {entry.sender_id}: "
            f"{entry.amount} {entry.coin_type_id} -> {entry.receiver_id} ({entry.status.value})"
        )
        return entry.copy()

    def accept(self, entry: LedgerEntry, receiver_key: KeyPair) -> LedgerEntry:
        """
        Countersign a pending entry as its receiver.

        Returns:
            The accepted copy (the local chain is updated if it holds the entry)

        Raises:
            LedgerStateError: If the entry is not pending, or is held locally
                but is no longer its sender's latest entry
        """
        if entry.status != EntryStatus.PENDING:
            raise LedgerStateError(
                f"Entry {entry.entry_id} is {entry.status.value}, only pending entries can be accepted"
            )

        accepted = entry.copy()
        accepted.receiver_signature = receiver_key.sign(accepted.signing_bytes())
        accepted.status = EntryStatus.ACCEPTED
        accepted.entry_hash = accepted.compute_hash()

        with self._lock:
            chain = self._chains.get(entry.sender_id, [])
            index = self._index_of(chain, entry.entry_id)
            if index is not None:
                if index != len(chain) - 1:
                    raise LedgerStateError(
                        f"Entry {entry.entry_id} already has successors and can no longer be accepted"
                    )
                accepted.propagation_witnesses = list(chain[index].propagation_witnesses)
                chain[index] = accepted
            # successors from the sender link to the accepted hash
            self._verifier.promote(accepted)
            self.stats["accepted"] += 1

        logger.info(f"Ledger entry {entry.entry_id} accepted by {entry.receiver_id}")
        return accepted.copy()

    # =========================================================================
    # Verification
    # =========================================================================

    def check(
        self,
        entry: LedgerEntry,
        sender_public_key: str,
        receiver_public_key: Optional[str] = None
    ) -> VerificationResult:
        """
        Verify an entry against the chain verified so far and, if it passes,
        make it the sender's verified tip.

        A pending tip may be verified again in its accepted form (same entry
        id and signed fields); that upgrade replaces the tip hash.
        """
        with self._lock:
            result = self._verifier.check(entry, sender_public_key, receiver_public_key)
        self._record_result(entry, result)
        return result

    def verify(
        self,
        entry: LedgerEntry,
        sender_public_key: str,
        receiver_public_key: Optional[str] = None
    ) -> bool:
        """Boolean form of check()."""
        return self.check(entry, sender_public_key, receiver_public_key).ok

    def verify_chain(
        self,
        entries: Iterable[LedgerEntry],
        sender_public_key: str,
        receiver_keys: Optional[Dict[str, str]] = None
    ) -> List[VerificationResult]:
        """
        Verify a sender's chain from sequence 1 without touching this
        ledger's verified state.

        Args:
            entries: The chain in sequence order
            sender_public_key: Sender's public key
            receiver_keys: Public keys of receivers by receiver id

        Returns:
            One result per entry; once an entry fails, every later entry fails too
        """
        receiver_keys = receiver_keys or {}
        verifier = _ChainVerifier()
        return [
            verifier.check(entry, sender_public_key, receiver_keys.get(entry.receiver_id))
            for entry in entries
        ]

    def _record_result(self, entry: LedgerEntry, result: VerificationResult) -> None:
        if result.ok:
            self.stats["verified"] += 1
            logger.debug(
                f"Ledger entry {entry.sender_id}#{entry.sequence_number} verified"
                + (" (status upgrade)" if result.upgraded else "")
            )
            return

        self.stats["rejected"] += 1
        logger.warning(
            f"Ledger entry {entry.sender_id}#{entry.sequence_number} rejected: "
            f"{result.failure.value}"
        )
        if self.reputation is not None and result.failure in _FORGERY_FAILURES:
            self.reputation.record_event(BehaviorEvent(
                peer_id=entry.sender_id,
                metric=BehaviorMetric.FORGERY_ATTEMPT,
                observed_value=1.0,
            ))

    def ingest(
        self,
        entry: LedgerEntry,
        sender_public_key: str,
        receiver_public_key: Optional[str] = None
    ) -> VerificationResult:
        """
        Verify a peer's entry and, if valid, keep a copy.

        The Lamport clock is merged with the entry's timestamp. Use either
        ingest() or check() for an entry, not both.
        """
        result = self.check(entry, sender_public_key, receiver_public_key)
        if not result.ok:
            return result

        self.clock.update(entry.lamport_timestamp)
        stored = entry.copy()
        with self._lock:
            chain = self._chains.setdefault(entry.sender_id, [])
            index = self._index_of(chain, entry.entry_id)
            if index is not None:
                current = chain[index]
                if (
                    index == len(chain) - 1
                    and current.status == EntryStatus.PENDING
                    and stored.status == EntryStatus.ACCEPTED
                    and current.signing_bytes() == stored.signing_bytes()
                ):
                    stored.propagation_witnesses = _merge(
                        current.propagation_witnesses, stored.propagation_witnesses
                    )
                    chain[index] = stored
            elif not chain or chain[-1].sequence_number + 1 == entry.sequence_number:
                chain.append(stored)
                self._transactions.add(entry.transaction_id)
            else:
                logger.warning(
                    f"Verified entry {entry.sender_id}#{entry.sequence_number} does not extend "
                    f"the local chain (at {chain[-1].sequence_number}), not stored"
                )
        return result

    # =========================================================================
    # Witnesses
    # =========================================================================

    def add_witness(self, entry: LedgerEntry, peer_id: str) -> bool:
        """
        Record that a peer has seen an entry.

        Returns:
            True if the witness was new
        """
        with self._lock:
            stored = self._find(entry.sender_id, entry.entry_id)
            targets = [e for e in (entry, stored) if e is not None]
            added = False
            for target in targets:
                if peer_id not in target.propagation_witnesses:
                    target.propagation_witnesses.append(peer_id)
                    added = True
        if added:
            logger.debug(f"Witness {peer_id} added to ledger entry {entry.entry_id}")
        return added

    def has_sufficient_propagation(self, entry: LedgerEntry) -> bool:
        with self._lock:
            stored = self._find(entry.sender_id, entry.entry_id)
            witnesses = set(entry.propagation_witnesses)
            if stored is not None:
                witnesses.update(stored.propagation_witnesses)
        return len(witnesses) >= self.witness_threshold

    # =========================================================================
    # Queries
    # =========================================================================

    def is_duplicate_transaction(self, transaction_id: str) -> bool:
        with self._lock:
            return transaction_id in self._transactions

    def entries_for(self, sender_id: str) -> List[LedgerEntry]:
        with self._lock:
            return [e.copy() for e in self._chains.get(sender_id, [])]

    def senders(self) -> List[str]:
        with self._lock:
            return list(self._chains)

    def latest(self, sender_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            chain = self._chains.get(sender_id)
            return chain[-1].copy() if chain else None

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                **self.stats,
                "senders": len(self._chains),
                "entries": sum(len(c) for c in self._chains.values()),
                "lamport": self.clock.current.counter,
            }

    @staticmethod
    def _index_of(chain: List[LedgerEntry], entry_id: str) -> Optional[int]:
        for index in range(len(chain) - 1, -1, -1):
            if chain[index].entry_id == entry_id:
                return index
        return None

    def _find(self, sender_id: str, entry_id: str) -> Optional[LedgerEntry]:
        chain = self._chains.get(sender_id, [])
        index = self._index_of(chain, entry_id)
        return chain[index] if index is not None else None


def _merge(first: List[str], second: List[str]) -> List[str]:
    merged = list(first)
    merged.extend(w for w in second if w not in merged)
    return merged

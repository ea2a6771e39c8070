# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the distributed ledger.

Tests appending, chain verification, tamper and replay detection, receiver
acceptance, witnesses and Lamport ordering.
"""

import pytest

from meshnode.mesh.crypto import KeyPair, verify_signature
from meshnode.mesh.errors import LedgerIntegrityError, LedgerStateError
from meshnode.mesh.ledger import (
    CoinTransaction,
    DistributedLedger,
    EntryStatus,
    LamportClock,
    LamportTimestamp,
    LedgerEntry,
    VerificationFailure,
)
from meshnode.mesh.reputation import NEUTRAL_SCORE


def _tx(amount=10.0, sender="alpha", receiver="bravo"):
    return CoinTransaction.create(sender, receiver, amount, coin_type_id="relay-credit")


def _chain(ledger, keys, length=5):
    return [ledger.append(_tx(amount=float(i + 1)), None, keys) for i in range(length)]


class TestCrypto:
    """Tests for signing helpers."""

    def test_sign_and_verify(self, sender_keys):
        signature = sender_keys.sign(b"payload")

        assert verify_signature(sender_keys.public_key, b"payload", signature)
        assert not verify_signature(sender_keys.public_key, b"other", signature)

    def test_wrong_key_fails(self, sender_keys, receiver_keys):
        signature = sender_keys.sign(b"payload")

        assert not verify_signature(receiver_keys.public_key, b"payload", signature)

    def test_malformed_inputs_fail_closed(self, sender_keys):
        assert not verify_signature("not base64!", b"payload", sender_keys.sign(b"payload"))
        assert not verify_signature(sender_keys.public_key, b"payload", "AAAA")

    def test_seeded_keys_are_deterministic(self):
        assert KeyPair.from_seed(b"x" * 32).public_key == KeyPair.from_seed(b"x" * 32).public_key


class TestLamportClock:
    """Tests for logical time."""

    def test_tick_and_update(self):
        clock = LamportClock("alpha")

        assert clock.tick().counter == 1
        assert clock.update(LamportTimestamp(7, "bravo")).counter == 8
        assert clock.update(LamportTimestamp(2, "bravo")).counter == 9

    def test_timestamps_order_by_counter_then_node(self):
        assert LamportTimestamp(1, "zulu") < LamportTimestamp(2, "alpha")
        assert LamportTimestamp(2, "alpha") < LamportTimestamp(2, "bravo")


class TestAppend:
    """Tests for appending entries."""

    def test_sequence_and_links(self, ledger, sender_keys):
        entries = _chain(ledger, sender_keys, 3)

        assert [e.sequence_number for e in entries] == [1, 2, 3]
        assert entries[0].previous_entry_hash is None
        assert entries[1].previous_entry_hash == entries[0].entry_hash
        assert entries[2].previous_entry_hash == entries[1].entry_hash
        assert len({e.nonce for e in entries}) == 3

    def test_sender_only_is_pending(self, ledger, sender_keys):
        entry = ledger.append(_tx(), None, sender_keys)

        assert entry.status == EntryStatus.PENDING
        assert entry.receiver_signature is None
        assert not entry.is_accepted

    def test_both_keys_is_accepted(self, ledger, sender_keys, receiver_keys):
        entry = ledger.append(_tx(), None, sender_keys, receiver_keys)

        assert entry.is_accepted

    def test_duplicate_transaction_rejected(self, ledger, sender_keys):
        tx = _tx()
        ledger.append(tx, None, sender_keys)

        with pytest.raises(LedgerStateError):
            ledger.append(tx, None, sender_keys)
        assert ledger.is_duplicate_transaction(tx.transaction_id)

    def test_explicit_timestamp_advances_clock(self, ledger, sender_keys):
        entry = ledger.append(_tx(), LamportTimestamp(41, "bravo"), sender_keys)

        assert entry.lamport_timestamp.counter == 41
        assert ledger.clock.current.counter == 42

    def test_returned_entry_is_a_copy(self, ledger, sender_keys):
        entry = ledger.append(_tx(), None, sender_keys)
        entry.propagation_witnesses.append("intruder")

        assert ledger.latest("alpha").propagation_witnesses == []


class TestVerifyChain:
    """Tests for whole-chain verification."""

    def test_valid_chain_verifies(self, ledger, sender_keys):
        entries = _chain(ledger, sender_keys)

        results = ledger.verify_chain(entries, sender_keys.public_key)

        assert all(r.ok for r in results)

    @pytest.mark.parametrize("index", [0, 2, 4])
    @pytest.mark.parametrize("field,value", [
        ("amount", 9999.0),
        ("receiver_id", "mallory"),
        ("nonce", "00" * 16),
        ("sequence_number", 42),
    ])
    def test_mutation_fails_entry_and_all_successors(self, ledger, sender_keys, index, field, value):
        entries = _chain(ledger, sender_keys)
        setattr(entries[index], field, value)

        results = ledger.verify_chain(entries, sender_keys.public_key)

        assert all(r.ok for r in results[:index])
        assert not any(r.ok for r in results[index:])
        assert results[index].failure == VerificationFailure.HASH_MISMATCH

    def test_rehashed_forgery_fails_signature(self, ledger, sender_keys):
        entries = _chain(ledger, sender_keys, 2)
        entries[1].amount = 5000.0
        entries[1].entry_hash = entries[1].compute_hash()

        results = ledger.verify_chain(entries, sender_keys.public_key)

        assert results[1].failure == VerificationFailure.BAD_SENDER_SIGNATURE

    def test_verify_chain_leaves_state_untouched(self, ledger, sender_keys):
        entries = _chain(ledger, sender_keys, 2)
        ledger.verify_chain(entries, sender_keys.public_key)

        assert ledger.verify(entries[0], sender_keys.public_key)

    def test_missing_entry_is_a_gap(self, ledger, sender_keys):
        entries = _chain(ledger, sender_keys, 3)

        results = ledger.verify_chain([entries[0], entries[2]], sender_keys.public_key)

        assert results[1].failure == VerificationFailure.SEQUENCE_GAP


class TestCheck:
    """Tests for incremental verification of peer entries."""

    def test_out_of_order_rejected(self, sender_keys):
        source = DistributedLedger("alpha")
        sink = DistributedLedger("bravo")
        entries = _chain(source, sender_keys, 2)

        assert sink.check(entries[1], sender_keys.public_key).failure == VerificationFailure.SEQUENCE_GAP
        assert sink.check(entries[0], sender_keys.public_key).ok
        assert sink.check(entries[1], sender_keys.public_key).ok

    def test_nonce_replay_rejected(self, sender_keys):
        source = DistributedLedger("alpha")
        sink = DistributedLedger("bravo")
        first = source.append(_tx(), None, sender_keys)
        assert sink.check(first, sender_keys.public_key).ok

        replay = LedgerEntry(
            entry_id="replayed",
            sequence_number=2,
            transaction_id="tx-replay",
            sender_id="alpha",
            receiver_id="bravo",
            amount=1.0,
            coin_type_id="relay-credit",
            lamport_timestamp=LamportTimestamp(5, "alpha"),
            wall_clock_time=first.wall_clock_time,
            nonce=first.nonce,
            previous_entry_hash=first.entry_hash,
        ).seal(sender_keys)

        result = sink.check(replay, sender_keys.public_key)

        assert result.failure == VerificationFailure.NONCE_REPLAY
        with pytest.raises(LedgerIntegrityError):
            result.raise_for_failure()

    def test_resubmitted_entry_rejected(self, sender_keys):
        source = DistributedLedger("alpha")
        sink = DistributedLedger("bravo")
        entry = source.append(_tx(), None, sender_keys)
        sink.check(entry, sender_keys.public_key)

        assert not sink.verify(entry, sender_keys.public_key)

    def test_forgery_reported_to_reputation(self, ledger, sender_keys):
        entry = DistributedLedger("alpha").append(_tx(), None, sender_keys)
        entry.amount = 1e6

        assert not ledger.verify(entry, sender_keys.public_key)
        assert ledger.reputation.get_score_value("alpha") < NEUTRAL_SCORE
        assert ledger.get_stats()["rejected"] == 1

    def test_accepted_entry_needs_receiver_key(self, ledger, sender_keys, receiver_keys):
        entry = DistributedLedger("alpha").append(_tx(), None, sender_keys, receiver_keys)

        assert ledger.check(entry, sender_keys.public_key).failure == VerificationFailure.MISSING_RECEIVER_KEY
        assert ledger.reputation.get_score_value("alpha") == NEUTRAL_SCORE
        assert ledger.check(entry, sender_keys.public_key, receiver_keys.public_key).ok

    def test_bad_receiver_signature_not_charged_to_sender(self, ledger, sender_keys, receiver_keys):
        entry = DistributedLedger("alpha").append(_tx(), None, sender_keys, receiver_keys)
        stranger = KeyPair.from_seed(b"x" * 32)

        result = ledger.check(entry, sender_keys.public_key, stranger.public_key)

        assert result.failure == VerificationFailure.BAD_RECEIVER_SIGNATURE
        assert ledger.reputation.get_score_value("alpha") == NEUTRAL_SCORE

    def test_from_dict_round_trip_verifies(self, sender_keys):
        entry = DistributedLedger("alpha").append(_tx(), None, sender_keys)

        restored = LedgerEntry.from_dict(entry.to_dict())

        assert DistributedLedger("bravo").verify(restored, sender_keys.public_key)

    def test_from_dict_malformed(self):
        with pytest.raises(LedgerIntegrityError):
            LedgerEntry.from_dict({"entry_id": "e1", "sequence_number": "one"})


class TestAccept:
    """Tests for receiver acceptance."""

    def test_accept_pending_entry(self, ledger, sender_keys, receiver_keys):
        entry = ledger.append(_tx(), None, sender_keys)

        accepted = ledger.accept(entry, receiver_keys)

        assert accepted.is_accepted
        assert accepted.entry_hash != entry.entry_hash
        assert ledger.latest("alpha").status == EntryStatus.ACCEPTED

    def test_accept_non_pending_rejected(self, ledger, sender_keys, receiver_keys):
        entry = ledger.append(_tx(), None, sender_keys, receiver_keys)

        with pytest.raises(LedgerStateError):
            ledger.accept(entry, receiver_keys)

    def test_accept_with_successor_rejected(self, ledger, sender_keys, receiver_keys):
        first, _ = _chain(ledger, sender_keys, 2)

        with pytest.raises(LedgerStateError):
            ledger.accept(first, receiver_keys)

    def test_pending_then_accepted_upgrade(self, sender_keys, receiver_keys):
        alpha = DistributedLedger("alpha")
        bravo = DistributedLedger("bravo")
        charlie = DistributedLedger("charlie")
        entry = alpha.append(_tx(), None, sender_keys)

        assert charlie.ingest(entry, sender_keys.public_key).ok
        accepted = bravo.accept(entry, receiver_keys)
        result = charlie.ingest(accepted, sender_keys.public_key, receiver_keys.public_key)

        assert result.ok
        assert result.upgraded
        assert charlie.latest("alpha").status == EntryStatus.ACCEPTED

    def test_receiver_verifies_successor_after_accepting(self, sender_keys, receiver_keys):
        alpha = DistributedLedger("alpha")
        bravo = DistributedLedger("bravo")

        for amount in (1.0, 2.0, 3.0):
            entry = alpha.append(_tx(amount=amount), None, sender_keys)
            assert bravo.ingest(entry, sender_keys.public_key).ok
            accepted = bravo.accept(entry, receiver_keys)
            assert alpha.ingest(accepted, sender_keys.public_key, receiver_keys.public_key).ok

        assert [e.sequence_number for e in bravo.entries_for("alpha")] == [1, 2, 3]
        assert all(e.is_accepted for e in bravo.entries_for("alpha"))
        assert bravo.get_stats()["rejected"] == 0

    def test_ingest_replaces_local_pending_copy(self, sender_keys, receiver_keys):
        alpha = DistributedLedger("alpha")
        bravo = DistributedLedger("bravo")
        entry = alpha.append(_tx(), None, sender_keys)
        bravo.ingest(entry, sender_keys.public_key)
        accepted = bravo.accept(entry, receiver_keys)

        result = alpha.ingest(accepted, sender_keys.public_key, receiver_keys.public_key)

        assert result.ok
        assert alpha.latest("alpha").status == EntryStatus.ACCEPTED
        assert alpha.latest("alpha").entry_hash == accepted.entry_hash


class TestWitnesses:
    """Tests for propagation witnesses."""

    def test_threshold(self, ledger, sender_keys):
        entry = ledger.append(_tx(), None, sender_keys)

        for peer in ("bravo", "charlie"):
            assert ledger.add_witness(entry, peer)
        assert not ledger.has_sufficient_propagation(entry)

        ledger.add_witness(entry, "delta")
        assert ledger.has_sufficient_propagation(entry)

    def test_repeat_witness_not_counted(self, ledger, sender_keys):
        entry = ledger.append(_tx(), None, sender_keys)
        ledger.add_witness(entry, "bravo")

        assert not ledger.add_witness(entry, "bravo")
        assert ledger.latest("alpha").propagation_witnesses == ["bravo"]

    def test_witnesses_do_not_break_hash(self, ledger, sender_keys):
        entry = ledger.append(_tx(), None, sender_keys)
        ledger.add_witness(entry, "bravo")

        assert DistributedLedger("charlie").verify(ledger.latest("alpha"), sender_keys.public_key)

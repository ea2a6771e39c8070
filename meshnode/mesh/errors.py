# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Error types for the meshnode relay core.

Transient failures (a single failed send, a duplicate message) are absorbed
by the component that sees them. The types below are for conditions that
are surfaced to the caller: malformed input, route exhaustion and ledger
integrity violations.
"""

from typing import Optional


class MeshError(Exception):
    """Base class for all meshnode core errors."""


class InvalidMessageError(MeshError, ValueError):
    """A message could not be decoded or was rejected at its source."""


class NoViableRouteError(MeshError):
    """No candidate route survived reputation filtering."""

    def __init__(self, destination_id: str, candidates: int = 0):
        self.destination_id = destination_id
        self.candidates = candidates
        super().__init__(
            f"No viable route to {destination_id} ({candidates} candidates rejected)"
        )


class LedgerError(MeshError):
    """Base class for distributed ledger errors."""


class LedgerIntegrityError(LedgerError):
    """An entry failed hash, signature, nonce or sequence verification."""

    def __init__(self, reason, entry_id: Optional[str] = None):
        self.reason = reason
        self.entry_id = entry_id
        label = getattr(reason, "value", reason)
        super().__init__(f"Ledger entry {entry_id or '?'} rejected: {label}")


class LedgerStateError(LedgerError):
    """An entry was asked to make an illegal status transition."""

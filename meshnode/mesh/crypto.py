# Copyright 2024 Apache TacticalMesh Contributors
# SPDX-License-Identifier: Apache-2.0
"""
Signing and hashing helpers used by the distributed ledger.

Ed25519 via PyNaCl. Keys and signatures travel base64-encoded.
"""

import base64
import binascii
import hashlib
import logging

import nacl.exceptions
import nacl.signing

logger = logging.getLogger(__name__)


class KeyPair:
    """
    An Ed25519 signing key and its public half.

    Example:
        keys = KeyPair.generate()
        signature = keys.sign(b"payload")
        verify_signature(keys.public_key, b"payload", signature)  # True
    """

    def __init__(self, signing_key: nacl.signing.SigningKey):
        self._signing_key = signing_key
        self.public_key = base64.b64encode(bytes(signing_key.verify_key)).decode("ascii")

    @classmethod
    def generate(cls) -> "KeyPair":
        return cls(nacl.signing.SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeyPair":
        """Deterministic key pair from a 32-byte seed."""
        return cls(nacl.signing.SigningKey(seed))

    def sign(self, data: bytes) -> str:
        """Sign bytes and return the detached signature, base64-encoded."""
        signed = self._signing_key.sign(data)
        return base64.b64encode(signed.signature).decode("ascii")

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key[:12]}...)"


def verify_signature(public_key: str, data: bytes, signature: str) -> bool:
    """
    Check a base64 detached signature against a base64 public key.

    Returns:
        False for a wrong signature or a malformed key/signature
    """
    try:
        verify_key = nacl.signing.VerifyKey(base64.b64decode(public_key, validate=True))
        verify_key.verify(data, base64.b64decode(signature, validate=True))
        return True
    except nacl.exceptions.BadSignatureError:
        return False
    except (binascii.Error, ValueError, TypeError, nacl.exceptions.CryptoError) as e:
        logger.debug(f"Malformed key or signature: {e}")
        return False


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

"""AES-256-GCM envelope codec for RPC payloads.

Envelope layout (before base64)::

    [0]         version (currently 0)
    [1:13]      96-bit random nonce
    [13:-16]    ciphertext
    [-16:]      GCM authentication tag

The plaintext is the compact JSON encoding of the payload value.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tether.errors import TetherError

#: Current envelope version byte.
ENVELOPE_VERSION = 0

#: Versions ``decrypt`` knows how to open.
SUPPORTED_VERSIONS = frozenset({ENVELOPE_VERSION})

#: Key size in bytes (AES-256).
KEY_BYTES = 32

NONCE_BYTES = 12
TAG_BYTES = 16

#: Smallest possible envelope: version + nonce + tag.
MIN_ENVELOPE_BYTES = 1 + NONCE_BYTES + TAG_BYTES


class CodecError(TetherError):
    """Base class for envelope failures (fatal to one message only)."""


class DecodeError(CodecError):
    """The envelope is not valid base64, too short, or not JSON inside."""


class UnsupportedVersion(CodecError):
    """The envelope's version byte is not one we can open."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Unknown encryption version: {version}")
        self.version = version


class AuthenticationError(CodecError):
    """The GCM tag did not verify (wrong key or tampered envelope)."""


def generate_key() -> str:
    """Return a fresh random 256-bit key, base64-encoded."""
    return base64.b64encode(os.urandom(KEY_BYTES)).decode("ascii")


class EnvelopeCodec:
    """Encrypts JSON-serialisable values into versioned, authenticated envelopes.

    Each ``encrypt`` call draws a new random nonce from ``os.urandom``; the
    key is fixed for the lifetime of the codec.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            msg = f"Invalid key length: expected {KEY_BYTES} bytes, got {len(key)}"
            raise ValueError(msg)
        self._key = key
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, key_b64: str) -> EnvelopeCodec:
        """Build a codec from a base64-encoded key (as stored in pairing codes)."""
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = "Encryption key is not valid base64"
            raise ValueError(msg) from exc
        return cls(key)

    @property
    def key_base64(self) -> str:
        """The key as base64 text."""
        return base64.b64encode(self._key).decode("ascii")

    def encrypt(self, value: Any) -> str:
        """Encrypt *value* and return the base64 envelope text."""
        plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_BYTES)
        # AESGCM appends the 16-byte tag to the ciphertext.
        sealed = self._aead.encrypt(nonce, plaintext, None)
        bundle = bytes([ENVELOPE_VERSION]) + nonce + sealed
        return base64.b64encode(bundle).decode("ascii")

    def decrypt(self, envelope: str) -> Any:
        """Open a base64 envelope and return the decoded JSON value.

        Raises:
            DecodeError: Not base64, shorter than the fixed overhead, or the
                plaintext is not JSON.
            UnsupportedVersion: Unknown version byte.
            AuthenticationError: Tag verification failed.
        """
        if not isinstance(envelope, str):
            msg = f"Envelope must be text, got {type(envelope).__name__}"
            raise DecodeError(msg)
        try:
            bundle = base64.b64decode(envelope, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = "Envelope is not valid base64"
            raise DecodeError(msg) from exc

        if len(bundle) < MIN_ENVELOPE_BYTES:
            msg = (
                f"Encrypted bundle too short: {len(bundle)} bytes "
                f"(minimum {MIN_ENVELOPE_BYTES})"
            )
            raise DecodeError(msg)

        version = bundle[0]
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(version)

        nonce = bundle[1 : 1 + NONCE_BYTES]
        sealed = bundle[1 + NONCE_BYTES :]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            msg = "Envelope failed authentication"
            raise AuthenticationError(msg) from exc

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            msg = "Envelope plaintext is not valid JSON"
            raise DecodeError(msg) from exc

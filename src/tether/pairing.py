"""Pairing descriptors: the out-of-band bootstrap a client needs to connect.

A descriptor carries the daemon's peer id and the raw encryption key, so
anyone holding it can issue RPC calls. It travels as a URL of the form
``tether://connect?code=<base64 JSON>``.
"""

from __future__ import annotations

import base64
import binascii
import json
import platform
import socket
import sys
import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tether.codec import KEY_BYTES
from tether.constants import LEGACY_PAIRING_PREFIXES, PAIRING_PREFIX

#: Current descriptor format version.
PAIRING_VERSION = 1


class PairingError(ValueError):
    """The text is not a usable pairing URL or code."""


class PairingMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    host: str = Field(default_factory=socket.gethostname)
    platform: str = Field(default=sys.platform, description="Daemon OS, e.g. 'linux'")
    created_at: int = Field(
        default_factory=lambda: int(time.time() * 1000),
        alias="createdAt",
    )
    root_dir: str | None = Field(
        default=None,
        alias="rootDir",
        description="Set when the daemon restricts session directories",
    )


class PairingDescriptor(BaseModel):
    """Everything a client needs to reach and talk to one daemon."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    v: int = Field(default=PAIRING_VERSION)
    dht_public_key: str = Field(
        alias="dhtPublicKey",
        min_length=1,
        description="Transport peer id of the daemon",
    )
    data_key: str = Field(
        alias="dataKey",
        min_length=1,
        description="Base64 AES-256 key for RPC envelopes",
    )
    metadata: PairingMetadata = Field(default_factory=PairingMetadata)

    @field_validator("data_key")
    @classmethod
    def _check_data_key(cls, value: str) -> str:
        try:
            key = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = "not valid base64"
            raise ValueError(msg) from exc
        if len(key) != KEY_BYTES:
            msg = f"expected a {KEY_BYTES}-byte key, got {len(key)} bytes"
            raise ValueError(msg)
        return value

    @property
    def peer_id(self) -> str:
        return self.dht_public_key

    def to_code(self) -> str:
        payload = self.model_dump_json(by_alias=True, exclude_none=True)
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    def to_url(self) -> str:
        return PAIRING_PREFIX + self.to_code()


def describe_host() -> str:
    """Short host label for banners: ``hostname (system release)``."""
    return f"{socket.gethostname()} ({platform.system()} {platform.release()})"


def parse_pairing_url(text: str) -> PairingDescriptor:
    """Decode a pairing URL (current or legacy prefix) or a bare code.

    Raises:
        PairingError: The text is not a pairing URL or the code inside it
            does not decode to a descriptor.
    """
    value = text.strip()
    code = value
    for prefix in (PAIRING_PREFIX, *LEGACY_PAIRING_PREFIXES):
        if value.startswith(prefix):
            code = value[len(prefix) :]
            break
    else:
        if "://" in value:
            msg = "Invalid pairing URL format"
            raise PairingError(msg)

    try:
        raw = json.loads(base64.b64decode(code, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        msg = f"Failed to parse pairing URL: {exc}"
        raise PairingError(msg) from exc

    try:
        return PairingDescriptor.model_validate(raw)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        msg = f"Failed to parse pairing URL: {exc.error_count()} invalid field(s) ({details})"
        raise PairingError(msg) from exc

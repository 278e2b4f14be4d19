"""Cryptographic primitives for the cloud protocol."""

from __future__ import annotations

from typing import Protocol

from pydilink._crypto._tables import CipherTables
from pydilink._crypto.aes import aes_decrypt_utf8, aes_encrypt_hex
from pydilink._crypto.envelope import CipherEnvelope
from pydilink._crypto.hashing import compute_checksum, md5_hex, password_key, sha1_mixed
from pydilink._crypto.signing import build_sign_string, sign_fields


class EnvelopeCodec(Protocol):
    """Structural interface of :class:`CipherEnvelope`."""

    def encode_envelope(self, plaintext: str | bytes) -> str: ...

    def decode_envelope(self, text: str) -> bytes: ...


__all__ = [
    "CipherEnvelope",
    "CipherTables",
    "EnvelopeCodec",
    "aes_decrypt_utf8",
    "aes_encrypt_hex",
    "build_sign_string",
    "compute_checksum",
    "md5_hex",
    "password_key",
    "sha1_mixed",
    "sign_fields",
]

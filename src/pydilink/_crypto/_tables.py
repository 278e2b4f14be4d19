"""Lookup tables for the envelope block cipher.

The tables are opaque constants extracted from the vendor's native library.
They are never derived; they are read from disk, size-checked and frozen
as ``bytes``.

Two on-disk formats are accepted:

* a binary container::

      Magic: b"DLTB" (4 bytes)
      Version: uint16 LE (2 bytes)
      Table count: uint16 LE (2 bytes) = 8
      Index: 8 entries of (offset: uint32 LE, length: uint32 LE)
      Data: concatenated raw table bytes

* a JSON object mapping camelCase table names (``invRound``, ``invXor``,
  ...) to base64 strings.
"""

from __future__ import annotations

import base64
import binascii
import json
import struct
from collections.abc import Mapping
from typing import NamedTuple

from pydilink.exceptions import TableLoadError

MAGIC = b"DLTB"
VERSION = 1

_HEADER = struct.Struct("<4sHH")
_INDEX_ENTRY = struct.Struct("<II")


class CipherTables(NamedTuple):
    """Lookup tables for the envelope cipher, in container order."""

    inv_round: bytes  # 0x28000 bytes
    inv_xor: bytes  # 0x3c000 bytes
    inv_first: bytes  # 0x1000 bytes
    round: bytes  # 0x28000 bytes
    xor: bytes  # 0x3c000 bytes
    final: bytes  # 0x1000 bytes
    perm_decrypt: bytes  # 8 bytes
    perm_encrypt: bytes  # 8 bytes


TABLE_SIZES: dict[str, int] = {
    "inv_round": 0x28000,
    "inv_xor": 0x3C000,
    "inv_first": 0x1000,
    "round": 0x28000,
    "xor": 0x3C000,
    "final": 0x1000,
    "perm_decrypt": 8,
    "perm_encrypt": 8,
}

_JSON_NAMES: dict[str, str] = {
    "invRound": "inv_round",
    "invXor": "inv_xor",
    "invFirst": "inv_first",
    "round": "round",
    "xor": "xor",
    "final": "final",
    "permDecrypt": "perm_decrypt",
    "permEncrypt": "perm_encrypt",
}


def build_tables(raw: Mapping[str, bytes]) -> CipherTables:
    """Validate table sizes and freeze them into a :class:`CipherTables`."""
    values: dict[str, bytes] = {}
    for name, expected in TABLE_SIZES.items():
        table = raw.get(name)
        if table is None:
            raise TableLoadError(f"Missing cipher table: {name}")
        if len(table) != expected:
            raise TableLoadError(f"Cipher table {name} has unexpected size {len(table)} (expected {expected})")
        values[name] = bytes(table)
    return CipherTables(**values)


def parse_container(data: bytes) -> CipherTables:
    """Parse the binary container format."""
    count_expected = len(TABLE_SIZES)
    if len(data) < _HEADER.size + count_expected * _INDEX_ENTRY.size:
        raise TableLoadError("Table file too short")

    magic, version, count = _HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise TableLoadError(f"Bad magic: expected {MAGIC!r}, got {magic!r}")
    if version != VERSION:
        raise TableLoadError(f"Unsupported table version: {version}")
    if count != count_expected:
        raise TableLoadError(f"Expected {count_expected} tables, got {count}")

    raw: dict[str, bytes] = {}
    for i, name in enumerate(TABLE_SIZES):
        offset, length = _INDEX_ENTRY.unpack_from(data, _HEADER.size + i * _INDEX_ENTRY.size)
        if offset + length > len(data):
            raise TableLoadError(f"Table {name}: data extends beyond file")
        raw[name] = data[offset : offset + length]
    return build_tables(raw)


def parse_json(text: str | bytes) -> CipherTables:
    """Parse the JSON/base64 format."""
    try:
        document = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TableLoadError(f"Table file is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise TableLoadError("Table file must contain a JSON object")

    raw: dict[str, bytes] = {}
    for json_name, name in _JSON_NAMES.items():
        encoded = document.get(json_name)
        if not isinstance(encoded, str) or not encoded:
            raise TableLoadError(f"Missing embedded table: {json_name}")
        try:
            raw[name] = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise TableLoadError(f"Embedded table {json_name} is not valid base64") from exc
    return build_tables(raw)


def pack_container(tables: CipherTables) -> bytes:
    """Serialise tables into the binary container format."""
    index_size = len(tables) * _INDEX_ENTRY.size
    offset = _HEADER.size + index_size
    header = bytearray(_HEADER.pack(MAGIC, VERSION, len(tables)))
    body = bytearray()
    for table in tables:
        header += _INDEX_ENTRY.pack(offset + len(body), len(table))
        body += table
    return bytes(header + body)


def load_tables(data: bytes) -> CipherTables:
    """Detect the format of *data* and parse it."""
    if data[:4] == MAGIC:
        return parse_container(data)
    if data.lstrip()[:1] == b"{":
        return parse_json(data)
    raise TableLoadError("Unrecognised cipher table format")

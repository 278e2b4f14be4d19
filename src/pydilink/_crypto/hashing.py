"""Hash-derived keys, signatures and checksums."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def md5_hex(value: str) -> str:
    """Uppercase hex MD5 of a UTF-8 string."""
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def password_key(password: str) -> str:
    """Content key used for the login payload: ``md5(md5(password))``."""
    return md5_hex(md5_hex(password))


def sha1_mixed(value: str) -> str:
    """SHA-1 in the vendor's mixed-case hex form.

    Digest bytes at even indices are rendered uppercase, odd indices
    lowercase; afterwards every ``"0"`` that sits at an even character
    position is dropped, so the result may be shorter than 40 characters.
    """
    digest = hashlib.sha1(value.encode("utf-8")).digest()
    mixed = "".join(
        f"{byte:02X}" if i % 2 == 0 else f"{byte:02x}"
        for i, byte in enumerate(digest)
    )
    return "".join(ch for i, ch in enumerate(mixed) if not (ch == "0" and i % 2 == 0))


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Compact JSON with lexicographically sorted keys."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def compute_checksum(payload: Mapping[str, Any]) -> str:
    """Checkcode of an outer request object.

    MD5 over :func:`canonical_json`, with the digest bytes reordered as
    12-15, 4-7, 8-11, 0-3 and rendered as lowercase hex.
    """
    digest = hashlib.md5(canonical_json(payload).encode("utf-8")).digest()
    return (digest[12:16] + digest[4:8] + digest[8:12] + digest[0:4]).hex()

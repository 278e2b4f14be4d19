"""Request signing."""

from __future__ import annotations

from collections.abc import Mapping

from pydilink._crypto.hashing import sha1_mixed


def build_sign_string(fields: Mapping[str, str], password: str) -> str:
    """Join ``key=value`` pairs in sorted key order and append the password term.

    >>> build_sign_string({"b": "2", "a": "1"}, "K")
    'a=1&b=2&password=K'
    """
    joined = "&".join(f"{key}={fields[key]}" for key in sorted(fields))
    return f"{joined}&password={password}"


def sign_fields(fields: Mapping[str, str], password: str) -> str:
    """Signature over *fields* keyed by *password*."""
    return sha1_mixed(build_sign_string(fields, password))

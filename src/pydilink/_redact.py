"""Scrub values before they reach DEBUG logs.

Four classes of field are treated differently:

* credentials (password, tokens, PIN hash, signature) are masked outright;
* wire blobs (``encryData``, ``respondData``, the HTTP envelopes) are
  reduced to their length; decoded values under those keys are
  scrubbed in turn;
* account and vehicle identifiers keep only their last four characters;
* coordinates are hidden.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_REDACTED = "<redacted>"
_LOCATION = "<location>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "signkey",
        "sign",
        "signtoken",
        "encrytoken",
        "commandpwd",
        "token",
        "cookie",
        "authorization",
    }
)

_BLOB_KEYS: frozenset[str] = frozenset({"encrydata", "responddata", "request", "response"})

_IDENTIFIER_KEYS: frozenset[str] = frozenset({"vin", "identifier", "userid", "imei", "imeimd5", "mac"})

_LOCATION_KEYS: frozenset[str] = frozenset({"latitude", "longitude", "latitudedone", "longitudedone"})


def _mask_tail(value: Any) -> str:
    text = str(value)
    if len(text) <= 4:
        return "***"
    return f"***{text[-4:]}"


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a scrubbed copy of *value* for debug logging.

    Strings longer than *max_string* are truncated and raw bytes are
    reduced to their length. Unknown objects are rendered with ``repr``.
    """
    if _depth > 16:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}...<{len(value)} chars>"
        return value

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}>"

    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            lowered = name.lower()
            if lowered in _SECRET_KEYS:
                out[name] = _REDACTED
            elif lowered in _BLOB_KEYS and isinstance(item, str):
                out[name] = f"<{len(item)} chars>"
            elif lowered in _IDENTIFIER_KEYS and item is not None:
                out[name] = _mask_tail(item)
            elif lowered in _LOCATION_KEYS and item is not None:
                out[name] = _LOCATION
            else:
                out[name] = redact_for_log(item, max_string=max_string, _depth=_depth + 1)
        return out

    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)

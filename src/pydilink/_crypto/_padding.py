"""PKCS#7 padding for the envelope cipher."""

from __future__ import annotations


def pad(data: bytes, block_size: int = 16) -> bytes:
    """Append PKCS#7 padding (a full block when already aligned)."""
    count = block_size - (len(data) % block_size)
    return data + bytes([count]) * count


def unpad(data: bytes, block_size: int = 16) -> bytes:
    """Strip PKCS#7 padding leniently.

    Returns *data* unchanged when the last byte is not a plausible pad
    length or the pad bytes disagree. Never raises.
    """
    if not data:
        return data
    count = data[-1]
    if count == 0 or count > block_size or count > len(data):
        return data
    if data[-count:] != bytes([count]) * count:
        return data
    return data[:-count]

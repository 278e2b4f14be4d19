"""Table-driven block cipher and CBC mode for the outer envelope.

Structurally this is AES with the key schedule folded into lookup tables:
each round is a table lookup per state byte followed by a nibble-wise XOR
network, and the last (or first) round is a plain byte substitution with a
row rotation. The indexing arithmetic below must stay byte-for-byte
identical to the vendor library, since the server-side decoder is fixed.

The working state is a 32-byte buffer where column ``c`` / row ``r`` lives
at ``c * 8 + r``; only the first four bytes of each 8-byte column are used.
"""

from __future__ import annotations

from pydilink._crypto._tables import CipherTables
from pydilink.exceptions import CipherError

BLOCK_SIZE = 16

# Row rotation applied per column by the terminal substitution passes.
_DECRYPT_ROTATION = (0, 3, 2, 1)
_ENCRYPT_ROTATION = (0, 1, 2, 3)


def _load_state(block: bytes | bytearray) -> bytearray:
    state = bytearray(32)
    for col in range(4):
        for row in range(4):
            state[col * 8 + row] = block[col + row * 4]
    return state


def _store_state(state: bytearray) -> bytes:
    out = bytearray(BLOCK_SIZE)
    for col in range(4):
        for row in range(4):
            out[col + row * 4] = state[col * 8 + row]
    return bytes(out)


def _round(
    state: bytearray,
    rnd: int,
    round_table: bytes,
    xor_table: bytes,
    perm: bytes,
) -> None:
    """Run one table round over *state* in place."""
    # Phase 1: each state byte selects a 4-byte word from the round table.
    words = bytearray(64)
    for col in range(4):
        start = perm[col * 2]
        for j in range(4):
            row = (start + j) & 3
            idx = state[col * 8 + row] + (col + (rnd * 4 + row) * 4) * 256
            dst = col * 16 + j * 4
            words[dst : dst + 4] = round_table[idx * 4 : idx * 4 + 4]

    # Phase 2: fold the four words together one nibble at a time.
    step = 1
    for col in range(4):
        for row in range(4):
            pos = col + row * 4
            acc = words[pos]
            low = acc & 0xF
            high = acc & 0xF0
            base = row * 0x18 + rnd * 0x60
            k = step
            for part in (words[pos + 0x10], words[pos + 0x20], words[pos + 0x30]):
                low_idx = low | ((part << 4) & 0xFF)
                high = ((high >> 4) | ((part >> 4) << 4)) & 0xFF
                low = xor_table[(base + k - 1) * 0x100 + low_idx] & 0xF
                high = (xor_table[(base + k) * 0x100 + high] & 0xF) << 4
                k += 2
            state[row + col * 8] = (high | low) & 0xFF
        step += 6


def _substitute(state: bytearray, table: bytes, rotation: tuple[int, ...]) -> None:
    """Terminal byte substitution with per-column row rotation."""
    snapshot = bytes(state)
    for row in range(4):
        for col, shift in enumerate(rotation):
            src = (shift + row) & 3
            state[col * 8 + row] = table[snapshot[col * 8 + src] + src * 0x400 + col * 0x100]


def decrypt_block(tables: CipherTables, block: bytes | bytearray, round_floor: int = 1) -> bytes:
    """Decrypt a single 16-byte block.

    Runs the inverse rounds 9 down to ``max(1, round_floor)``; the terminal
    substitution only runs when *round_floor* is 1 (full decryption).
    """
    if len(block) != BLOCK_SIZE:
        raise CipherError(f"Block must be {BLOCK_SIZE} bytes, got {len(block)}")
    state = _load_state(block)
    for rnd in range(9, max(1, round_floor) - 1, -1):
        _round(state, rnd, tables.inv_round, tables.inv_xor, tables.perm_decrypt)
    if round_floor == 1:
        _substitute(state, tables.inv_first, _DECRYPT_ROTATION)
    return _store_state(state)


def encrypt_block(tables: CipherTables, block: bytes | bytearray, round_ceiling: int = 10) -> bytes:
    """Encrypt a single 16-byte block.

    Runs forward rounds ``0 .. min(9, round_ceiling) - 1``; the terminal
    substitution only runs when *round_ceiling* is 10 (full encryption).
    """
    if len(block) != BLOCK_SIZE:
        raise CipherError(f"Block must be {BLOCK_SIZE} bytes, got {len(block)}")
    state = _load_state(block)
    for rnd in range(min(9, max(0, round_ceiling))):
        _round(state, rnd, tables.round, tables.xor, tables.perm_encrypt)
    if round_ceiling == 10:
        _substitute(state, tables.final, _ENCRYPT_ROTATION)
    return _store_state(state)


def _check_cbc_args(data: bytes, iv: bytes, what: str) -> None:
    if len(data) % BLOCK_SIZE != 0:
        raise CipherError(f"{what} length {len(data)} is not a multiple of {BLOCK_SIZE}")
    if len(iv) != BLOCK_SIZE:
        raise CipherError(f"IV must be {BLOCK_SIZE} bytes, got {len(iv)}")


def decrypt_cbc(tables: CipherTables, data: bytes, iv: bytes) -> bytes:
    """Decrypt *data* in CBC mode.

    Raises
    ------
    CipherError
        If *data* is not block-aligned or *iv* is not 16 bytes.
    """
    _check_cbc_args(data, iv, "Ciphertext")
    result = bytearray()
    prev = bytes(iv)
    for offset in range(0, len(data), BLOCK_SIZE):
        block = data[offset : offset + BLOCK_SIZE]
        plain = decrypt_block(tables, block, 1)
        result += bytes(a ^ b for a, b in zip(plain, prev))
        prev = block
    return bytes(result)


def encrypt_cbc(tables: CipherTables, data: bytes, iv: bytes) -> bytes:
    """Encrypt *data* in CBC mode.

    Raises
    ------
    CipherError
        If *data* is not block-aligned or *iv* is not 16 bytes.
    """
    _check_cbc_args(data, iv, "Plaintext")
    result = bytearray()
    prev = bytes(iv)
    for offset in range(0, len(data), BLOCK_SIZE):
        mixed = bytes(a ^ b for a, b in zip(data[offset : offset + BLOCK_SIZE], prev))
        prev = encrypt_block(tables, mixed, 10)
        result += prev
    return bytes(result)

"""Outer envelope framing: ``<tag><base64(CBC(zero IV, PKCS7(plaintext)))>``."""

from __future__ import annotations

import asyncio
import base64
import binascii
import importlib.resources
import logging
from pathlib import Path

from pydilink._crypto._block import BLOCK_SIZE, decrypt_cbc, encrypt_cbc
from pydilink._crypto._padding import pad, unpad
from pydilink._crypto._tables import CipherTables, load_tables
from pydilink.exceptions import CipherError, TableLoadError

_logger = logging.getLogger(__name__)

_ZERO_IV = b"\x00" * BLOCK_SIZE
ENVELOPE_TAG = "F"
_ACCEPTED_TAGS = ("F", "S")
_PACKAGE_TABLES = "data/cipher_tables.bin"


def normalise_envelope_text(text: str) -> str:
    """Prepare envelope text for base64 decoding.

    Removes all whitespace, maps URL-safe characters back to the standard
    alphabet, strips a one-character ``F``/``S`` tag and restores padding.
    """
    cleaned = "".join(str(text or "").split())
    cleaned = cleaned.replace("-", "+").replace("_", "/")
    if not cleaned:
        raise CipherError("Envelope input is empty")
    if cleaned[0] in _ACCEPTED_TAGS and len(cleaned) > 1:
        cleaned = cleaned[1:]
    remainder = len(cleaned) % 4
    if remainder:
        cleaned += "=" * (4 - remainder)
    return cleaned


class CipherEnvelope:
    """Encode and decode outer envelopes.

    Parameters
    ----------
    tables_path : Path or None
        File holding the cipher tables (binary container or JSON/base64).
        When ``None`` the tables are read from the package data directory.
    tables : CipherTables or None
        Already-loaded tables; takes precedence over *tables_path*.
    """

    def __init__(self, tables_path: Path | None = None, *, tables: CipherTables | None = None) -> None:
        self._tables_path = tables_path
        self._tables = tables

    @property
    def loaded(self) -> bool:
        return self._tables is not None

    def load(self) -> CipherTables:
        """Load and validate the tables (once).

        Raises
        ------
        TableLoadError
            If the file is missing or any table has the wrong size.
        """
        if self._tables is not None:
            return self._tables

        if self._tables_path is not None:
            _logger.debug("Loading cipher tables from %s", self._tables_path)
            try:
                raw = self._tables_path.read_bytes()
            except OSError as exc:
                raise TableLoadError(f"Table file not readable: {self._tables_path}") from exc
        else:
            _logger.debug("Loading cipher tables from package data")
            try:
                raw = importlib.resources.files("pydilink").joinpath(_PACKAGE_TABLES).read_bytes()
            except (FileNotFoundError, OSError) as exc:
                raise TableLoadError(
                    f"{_PACKAGE_TABLES} not found in package data; set DILINK_CIPHER_TABLES to the table file"
                ) from exc

        self._tables = load_tables(raw)
        _logger.debug("Cipher tables loaded")
        return self._tables

    async def async_load(self) -> CipherTables:
        """Load the tables without blocking the event loop."""
        if self._tables is not None:
            return self._tables
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load)

    def encode_envelope(self, plaintext: str | bytes) -> str:
        """Encrypt *plaintext* into tagged envelope text."""
        tables = self.load()
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        ciphertext = encrypt_cbc(tables, pad(data, BLOCK_SIZE), _ZERO_IV)
        return ENVELOPE_TAG + base64.b64encode(ciphertext).decode("ascii")

    def decode_envelope(self, text: str) -> bytes:
        """Decrypt envelope text back to plaintext bytes.

        Raises
        ------
        CipherError
            If the text is empty, not base64, or not block-aligned.
        """
        tables = self.load()
        payload = normalise_envelope_text(text)
        try:
            ciphertext = base64.b64decode(payload)
        except (binascii.Error, ValueError) as exc:
            raise CipherError(f"Invalid base64 in envelope: {exc}") from exc

        if not ciphertext:
            raise CipherError("Envelope ciphertext is empty")
        if len(ciphertext) % BLOCK_SIZE != 0:
            raise CipherError(f"Envelope ciphertext length {len(ciphertext)} is not a multiple of {BLOCK_SIZE}")

        return unpad(decrypt_cbc(tables, ciphertext, _ZERO_IV), BLOCK_SIZE)

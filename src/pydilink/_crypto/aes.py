"""Standard AES-128-CBC for inner payloads and push messages."""

from __future__ import annotations

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from pydilink.exceptions import CryptoError, DecryptError

_ZERO_IV = b"\x00" * 16
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def is_hex(value: str) -> bool:
    """Whether *value* is a non-empty, even-length hex string."""
    return bool(value) and len(value) % 2 == 0 and all(ch in _HEX_DIGITS for ch in value)


def _key_bytes(key_hex: str) -> bytes:
    text = key_hex.strip()
    if not is_hex(text):
        raise CryptoError("AES key must be hex-encoded")
    key = bytes.fromhex(text)
    if len(key) not in (16, 24, 32):
        raise CryptoError(f"AES key must be 16, 24 or 32 bytes (got {len(key)})")
    return key


def aes_encrypt_hex(plaintext: str, key_hex: str) -> str:
    """AES-CBC encrypt with zero IV, returning uppercase hex.

    Raises
    ------
    CryptoError
        If the key is malformed.
    """
    key = _key_bytes(key_hex)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(_ZERO_IV)).encryptor()
    return (encryptor.update(padded) + encryptor.finalize()).hex().upper()


def aes_decrypt_utf8(cipher_hex: str, key_hex: str) -> str:
    """AES-CBC decrypt hex ciphertext with zero IV into a UTF-8 string.

    Raises
    ------
    DecryptError
        If the ciphertext is not hex, not block-aligned, has bad padding
        or is not valid UTF-8.
    """
    text = cipher_hex.strip()
    if text.startswith(("0x", "0X")):
        text = text[2:]
    if not is_hex(text):
        raise DecryptError("AES ciphertext must be hex-encoded")
    try:
        key = _key_bytes(key_hex)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(_ZERO_IV)).decryptor()
        padded = decryptor.update(bytes.fromhex(text)) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except (CryptoError, ValueError) as exc:
        raise DecryptError(f"AES decryption failed: {exc}") from exc

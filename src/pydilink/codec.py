"""Signed request envelopes and response decoding.

Every call sends an *outer* object: device fields, a signature, a checksum
and an ``encryData`` blob holding the AES-encrypted *inner* object. Login
derives its keys from the password; every other call derives them from the
session tokens.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any, NamedTuple

from pydilink._constants import SUCCESS_CODE
from pydilink._crypto import EnvelopeCodec
from pydilink._crypto.aes import aes_decrypt_utf8, aes_encrypt_hex
from pydilink._crypto.hashing import compute_checksum, md5_hex, password_key
from pydilink._crypto.signing import sign_fields
from pydilink.config import DeviceIdentity
from pydilink.exceptions import CryptoError, DecryptError, EmptyPayloadError
from pydilink.session import Session

_logger = logging.getLogger(__name__)

#: Inner fields of the login payload.
LOGIN_INNER_FIELDS: frozenset[str] = frozenset(
    {
        "appInnerVersion",
        "appVersion",
        "deviceName",
        "deviceType",
        "imeiMD5",
        "isAuto",
        "mobileBrand",
        "mobileModel",
        "networkType",
        "osType",
        "osVersion",
        "random",
        "softType",
        "timeStamp",
        "timeZone",
    }
)

#: Fields signed on top of the inner payload at login.
LOGIN_SIGN_EXTRA_FIELDS: frozenset[str] = frozenset(
    {"countryCode", "functionType", "identifier", "identifierType", "language", "reqTimestamp"}
)

#: Fields signed on top of the inner payload for session calls.
SESSION_SIGN_EXTRA_FIELDS: frozenset[str] = frozenset(
    {"countryCode", "identifier", "imeiMD5", "language", "reqTimestamp"}
)

LOGIN_FUNCTION_TYPE = "pwdLogin"


class SessionEnvelope(NamedTuple):
    """Outer request plus the key needed to decrypt its ``respondData``."""

    envelope: dict[str, Any]
    content_key: str


@dataclasses.dataclass(frozen=True)
class ApiResponse:
    """Decoded outer response."""

    code: str
    message: str
    respond_data: str | None
    raw: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_hex() -> str:
    return secrets.token_hex(16).upper()


def _finalize_outer(fields: Mapping[str, Any]) -> dict[str, Any]:
    # Emitted in sorted order so the checkcode covers exactly the bytes sent.
    outer = {key: fields[key] for key in sorted(fields)}
    outer["checkcode"] = compute_checksum(outer)
    return outer


class ProtocolCodec:
    """Build outer envelopes and decode responses.

    Parameters
    ----------
    envelope : EnvelopeCodec
        Outer-body cipher (normally :class:`~pydilink._crypto.CipherEnvelope`).
    """

    def __init__(self, envelope: EnvelopeCodec) -> None:
        self._envelope = envelope

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def build_login_envelope(
        self,
        username: str,
        password: str,
        country_code: str,
        language: str,
        device: DeviceIdentity,
        *,
        now_ms: int | None = None,
    ) -> dict[str, Any]:
        """Build the outer object for ``/app/account/login``.

        The inner payload is encrypted with ``md5(md5(password))`` and the
        signature is keyed by ``md5(password)``.
        """
        req_timestamp = str(now_ms if now_ms is not None else _now_ms())
        inner: dict[str, str] = {
            "appInnerVersion": device.app_inner_version,
            "appVersion": device.app_version,
            "deviceName": f"{device.mobile_brand}{device.mobile_model}",
            "deviceType": device.device_type,
            "imeiMD5": device.imei_md5,
            "isAuto": device.is_auto,
            "mobileBrand": device.mobile_brand,
            "mobileModel": device.mobile_model,
            "networkType": device.network_type,
            "osType": device.os_type,
            "osVersion": device.os_version,
            "random": _random_hex(),
            "softType": device.soft_type,
            "timeStamp": req_timestamp,
            "timeZone": device.time_zone,
        }
        encry_data = aes_encrypt_hex(_compact(inner), password_key(password))

        signed = {
            **inner,
            "countryCode": country_code,
            "functionType": LOGIN_FUNCTION_TYPE,
            "identifier": username,
            "identifierType": "0",
            "language": language,
            "reqTimestamp": req_timestamp,
        }
        outer = {
            "countryCode": country_code,
            "encryData": encry_data,
            "functionType": LOGIN_FUNCTION_TYPE,
            "identifier": username,
            "identifierType": "0",
            "imeiMD5": device.imei_md5,
            "isAuto": device.is_auto,
            "language": language,
            "reqTimestamp": req_timestamp,
            "sign": sign_fields(signed, md5_hex(password)),
            "signKey": password,
            **device.outer_fields(),
            "serviceTime": str(_now_ms()),
        }
        return _finalize_outer(outer)

    def build_session_envelope(
        self,
        session: Session,
        country_code: str,
        language: str,
        device: DeviceIdentity,
        inner: Mapping[str, Any],
        *,
        now_ms: int | None = None,
    ) -> SessionEnvelope:
        """Build the outer object for any post-login call.

        Returns
        -------
        SessionEnvelope
            The outer object and the content key that decrypts the
            matching response.
        """
        req_timestamp = str(now_ms if now_ms is not None else _now_ms())
        content_key = session.content_key()
        encry_data = aes_encrypt_hex(_compact(inner), content_key)

        signed = {
            **inner,
            "countryCode": country_code,
            "identifier": session.user_id,
            "imeiMD5": device.imei_md5,
            "language": language,
            "reqTimestamp": req_timestamp,
        }
        outer = {
            "countryCode": country_code,
            "encryData": encry_data,
            "identifier": session.user_id,
            "imeiMD5": device.imei_md5,
            "language": language,
            "reqTimestamp": req_timestamp,
            "sign": sign_fields({k: str(v) for k, v in signed.items()}, session.sign_key()),
            **device.outer_fields(),
            "serviceTime": str(_now_ms()),
        }
        return SessionEnvelope(_finalize_outer(outer), content_key)

    def build_inner(
        self,
        device: DeviceIdentity,
        *,
        vin: str | None = None,
        request_serial: str | None = None,
        now_ms: int | None = None,
        **extra: str,
    ) -> dict[str, str]:
        """Common inner fields shared by every post-login endpoint."""
        inner: dict[str, str] = {
            "deviceType": device.device_type,
            "imeiMD5": device.imei_md5,
            "networkType": device.network_type,
            "random": _random_hex(),
            "timeStamp": str(now_ms if now_ms is not None else _now_ms()),
            "version": device.app_inner_version,
        }
        inner.update(extra)
        if vin:
            inner["vin"] = vin
        if request_serial:
            inner["requestSerial"] = request_serial
        return inner

    def encode_request(self, outer: Mapping[str, Any]) -> dict[str, str]:
        """Wrap *outer* as the HTTP body ``{"request": <envelope>}``."""
        return {"request": self._envelope.encode_envelope(_compact(outer))}

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def decode_response(self, raw: Mapping[str, Any] | str | None) -> ApiResponse:
        """Decode an HTTP response body into an :class:`ApiResponse`.

        Raises
        ------
        EmptyPayloadError
            If the body carries no envelope text.
        CipherError
            If the envelope is malformed.
        DecryptError
            If the decoded envelope is not a JSON object.
        """
        text = raw.get("response") if isinstance(raw, Mapping) else raw
        if not isinstance(text, str) or not text.strip():
            raise EmptyPayloadError("Response carried no envelope")

        decoded = self._envelope.decode_envelope(text).decode("utf-8", errors="replace").strip()
        if decoded.startswith(("F{", "F[")):
            decoded = decoded[1:]
        try:
            parsed = json.loads(decoded)
        except json.JSONDecodeError as exc:
            raise DecryptError(f"Decoded envelope is not JSON: {decoded[:64]!r}") from exc
        if not isinstance(parsed, dict):
            raise DecryptError("Decoded envelope is not a JSON object")

        respond_data = parsed.get("respondData")
        return ApiResponse(
            code=str(parsed.get("code", "")),
            message=str(parsed.get("message") or ""),
            respond_data=respond_data if isinstance(respond_data, str) and respond_data else None,
            raw=parsed,
        )

    def decrypt_payload(self, cipher_hex: str, key_hex: str) -> Any:
        """Decrypt a ``respondData`` blob and parse it as JSON.

        Raises
        ------
        DecryptError
            On any cipher or JSON failure. Usually means the key belongs to
            a replaced session.
        """
        try:
            plaintext = aes_decrypt_utf8(cipher_hex, key_hex)
        except CryptoError as exc:
            raise DecryptError(str(exc)) from exc
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise DecryptError(f"respondData is not JSON: {plaintext[:64]!r}") from exc


def _compact(value: Mapping[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

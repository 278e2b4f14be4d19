from __future__ import annotations

import json

import pytest

from pydilink._crypto import CipherEnvelope
from pydilink._crypto.aes import aes_decrypt_utf8, aes_encrypt_hex, is_hex
from pydilink._crypto.hashing import compute_checksum, md5_hex, password_key, sha1_mixed
from pydilink._crypto.signing import build_sign_string, sign_fields
from pydilink.codec import (
    LOGIN_INNER_FIELDS,
    LOGIN_SIGN_EXTRA_FIELDS,
    SESSION_SIGN_EXTRA_FIELDS,
    ProtocolCodec,
)
from pydilink.config import DeviceIdentity
from pydilink.exceptions import DecryptError, EmptyPayloadError
from pydilink.session import Session

_DEVICE_OUTER_FIELDS = {"ostype", "imei", "mac", "model", "sdk", "mod"}


def _session() -> Session:
    return Session(user_id="347678", sign_token="sign-token-1", encry_token="encry-token-1")


def _without_checkcode(outer: dict[str, object]) -> dict[str, object]:
    return {k: v for k, v in outer.items() if k != "checkcode"}


def test_md5_hex_is_uppercase() -> None:
    assert md5_hex("") == "D41D8CD98F00B204E9800998ECF8427E"
    assert password_key("secret") == md5_hex(md5_hex("secret"))


def test_sha1_mixed_vectors() -> None:
    assert sha1_mixed("abc") == "A9993E36476816aBA3e25717850C26c9Cd0D89d"
    assert sha1_mixed("") == "DA39A3ee5E6b4Bd3255BFef95601890AFd879"


def test_build_sign_string_sorts_keys() -> None:
    assert build_sign_string({"b": "2", "a": "1"}, "K") == "a=1&b=2&password=K"
    assert sign_fields({"b": "2", "a": "1"}, "K") == sha1_mixed("a=1&b=2&password=K")


def test_compute_checksum_reorders_digest() -> None:
    # md5("{}") = 99914b93 2bd37a50 b983c5e7 c90ae93b
    assert compute_checksum({}) == "c90ae93b2bd37a50b983c5e799914b93"


def test_compute_checksum_ignores_key_order() -> None:
    assert compute_checksum({"b": "1", "a": "2"}) == compute_checksum({"a": "2", "b": "1"})
    assert compute_checksum({"a": "1"}) != compute_checksum({"a": "2"})


def test_login_envelope_field_sets_and_signature(codec: ProtocolCodec) -> None:
    device = DeviceIdentity()
    outer = codec.build_login_envelope("user@example.com", "secret", "NL", "en", device, now_ms=1700000000000)

    assert set(outer) == {
        "countryCode",
        "encryData",
        "functionType",
        "identifier",
        "identifierType",
        "imeiMD5",
        "isAuto",
        "language",
        "reqTimestamp",
        "sign",
        "signKey",
        "serviceTime",
        "checkcode",
        *_DEVICE_OUTER_FIELDS,
    }
    assert outer["functionType"] == "pwdLogin"
    assert outer["signKey"] == "secret"
    assert outer["reqTimestamp"] == "1700000000000"
    assert list(outer)[-1] == "checkcode"
    assert outer["checkcode"] == compute_checksum(_without_checkcode(outer))

    inner = json.loads(aes_decrypt_utf8(outer["encryData"], password_key("secret")))
    assert set(inner) == LOGIN_INNER_FIELDS
    assert inner["timeStamp"] == "1700000000000"
    assert inner["deviceName"] == "XIAOMIPOCO F1"
    assert is_hex(inner["random"]) and inner["random"] == inner["random"].upper()

    signed = {**inner, **{name: outer[name] for name in LOGIN_SIGN_EXTRA_FIELDS}}
    assert outer["sign"] == sign_fields(signed, md5_hex("secret"))


def test_session_envelope_field_sets_and_signature(codec: ProtocolCodec) -> None:
    device = DeviceIdentity()
    session = _session()
    inner = codec.build_inner(device, vin="VIN123", request_serial="SERIAL-1", now_ms=1700000000000, commandType="LOCKDOOR")

    outer, content_key = codec.build_session_envelope(session, "NL", "en", device, inner, now_ms=1700000000000)

    assert content_key == md5_hex("encry-token-1")
    assert set(outer) == {
        "countryCode",
        "encryData",
        "identifier",
        "imeiMD5",
        "language",
        "reqTimestamp",
        "sign",
        "serviceTime",
        "checkcode",
        *_DEVICE_OUTER_FIELDS,
    }
    assert outer["identifier"] == "347678"
    assert outer["checkcode"] == compute_checksum(_without_checkcode(outer))
    assert list(_without_checkcode(outer)) == sorted(_without_checkcode(outer))

    decrypted = json.loads(aes_decrypt_utf8(outer["encryData"], content_key))
    assert decrypted == inner
    assert decrypted["vin"] == "VIN123"
    assert decrypted["requestSerial"] == "SERIAL-1"
    assert decrypted["commandType"] == "LOCKDOOR"

    signed = {**inner, **{name: outer[name] for name in SESSION_SIGN_EXTRA_FIELDS}}
    assert outer["sign"] == sign_fields(signed, md5_hex("sign-token-1"))


_FIXED_RANDOM = "0123456789ABCDEF0123456789ABCDEF"
_IMEI_MD5 = "00000000000000000000000000000000"


@pytest.fixture
def pinned_codec(codec: ProtocolCodec, monkeypatch: pytest.MonkeyPatch) -> ProtocolCodec:
    monkeypatch.setattr("pydilink.codec._random_hex", lambda: _FIXED_RANDOM)
    monkeypatch.setattr("pydilink.codec._now_ms", lambda: 1700000000123)
    return codec


def test_login_envelope_sign_string_is_stable(pinned_codec: ProtocolCodec) -> None:
    outer = pinned_codec.build_login_envelope(
        "user@example.com", "abc", "NL", "en", DeviceIdentity(), now_ms=1700000000000
    )

    sign_string = (
        "appInnerVersion=322&appVersion=3.2.2&countryCode=NL&deviceName=XIAOMIPOCO F1&deviceType=0"
        "&functionType=pwdLogin&identifier=user@example.com&identifierType=0"
        f"&imeiMD5={_IMEI_MD5}&isAuto=1&language=en&mobileBrand=XIAOMI&mobileModel=POCO F1"
        f"&networkType=wifi&osType=15&osVersion=35&random={_FIXED_RANDOM}&reqTimestamp=1700000000000"
        "&softType=0&timeStamp=1700000000000&timeZone=Europe/Amsterdam"
        # md5("abc")
        "&password=900150983CD24FB0D6963F7D28E17F72"
    )
    assert outer["sign"] == sha1_mixed(sign_string)
    assert outer["serviceTime"] == "1700000000123"


def test_session_envelope_is_stable(pinned_codec: ProtocolCodec) -> None:
    device = DeviceIdentity()
    session = Session(user_id="347678", sign_token="abc", encry_token="message digest")
    inner = pinned_codec.build_inner(
        device, vin="VIN123", request_serial="SERIAL-1", now_ms=1700000000000, commandType="LOCKDOOR"
    )

    outer, content_key = pinned_codec.build_session_envelope(session, "NL", "en", device, inner, now_ms=1700000000000)

    # md5("message digest")
    assert content_key == "F96B697D7CB7938D525A2F31AAF161D0"
    sign_string = (
        "commandType=LOCKDOOR&countryCode=NL&deviceType=0&identifier=347678"
        f"&imeiMD5={_IMEI_MD5}&language=en&networkType=wifi&random={_FIXED_RANDOM}"
        "&reqTimestamp=1700000000000&requestSerial=SERIAL-1&timeStamp=1700000000000&version=322&vin=VIN123"
        # md5("abc")
        "&password=900150983CD24FB0D6963F7D28E17F72"
    )
    expected = {
        "countryCode": "NL",
        "encryData": outer["encryData"],
        "identifier": "347678",
        "imei": "BANGCLE01234",
        "imeiMD5": _IMEI_MD5,
        "language": "en",
        "mac": "00:00:00:00:00:00",
        "mod": "Xiaomi",
        "model": "POCO F1",
        "ostype": "and",
        "reqTimestamp": "1700000000000",
        "sdk": "35",
        "serviceTime": "1700000000123",
        "sign": sha1_mixed(sign_string),
    }
    assert _without_checkcode(outer) == expected
    assert outer["checkcode"] == compute_checksum(expected)
    assert json.loads(aes_decrypt_utf8(outer["encryData"], content_key)) == {
        "commandType": "LOCKDOOR",
        "deviceType": "0",
        "imeiMD5": _IMEI_MD5,
        "networkType": "wifi",
        "random": _FIXED_RANDOM,
        "requestSerial": "SERIAL-1",
        "timeStamp": "1700000000000",
        "version": "322",
        "vin": "VIN123",
    }


def test_build_inner_omits_empty_vin_and_serial(codec: ProtocolCodec) -> None:
    inner = codec.build_inner(DeviceIdentity(), now_ms=1)
    assert set(inner) == {"deviceType", "imeiMD5", "networkType", "random", "timeStamp", "version"}
    assert inner["version"] == "322"


def test_encode_request_wraps_envelope(codec: ProtocolCodec, envelope: CipherEnvelope) -> None:
    body = codec.encode_request({"a": "1"})
    assert set(body) == {"request"}
    assert json.loads(envelope.decode_envelope(body["request"])) == {"a": "1"}


def test_decode_response(codec: ProtocolCodec, envelope: CipherEnvelope) -> None:
    text = envelope.encode_envelope(json.dumps({"code": "0", "message": "SUCCESS", "respondData": "ABCD"}))
    response = codec.decode_response({"response": text})

    assert response.ok
    assert response.message == "SUCCESS"
    assert response.respond_data == "ABCD"


def test_decode_response_strips_stray_tag(codec: ProtocolCodec, envelope: CipherEnvelope) -> None:
    text = envelope.encode_envelope('F{"code":"1005","message":"expired"}')
    response = codec.decode_response({"response": text})

    assert not response.ok
    assert response.code == "1005"
    assert response.respond_data is None


def test_decode_response_errors(codec: ProtocolCodec, envelope: CipherEnvelope) -> None:
    with pytest.raises(EmptyPayloadError):
        codec.decode_response({})
    with pytest.raises(EmptyPayloadError):
        codec.decode_response({"response": "  "})
    with pytest.raises(DecryptError):
        codec.decode_response({"response": envelope.encode_envelope("not json")})
    with pytest.raises(DecryptError):
        codec.decode_response({"response": envelope.encode_envelope("[1, 2]")})


def test_decrypt_payload(codec: ProtocolCodec) -> None:
    key = md5_hex("encry-token-1")
    cipher_hex = aes_encrypt_hex(json.dumps({"vin": "VIN123"}), key)

    assert codec.decrypt_payload(cipher_hex, key) == {"vin": "VIN123"}
    assert codec.decrypt_payload(cipher_hex.lower(), key) == {"vin": "VIN123"}


def test_decrypt_payload_errors(codec: ProtocolCodec) -> None:
    key = md5_hex("encry-token-1")
    with pytest.raises(DecryptError):
        codec.decrypt_payload("not-hex", key)
    with pytest.raises(DecryptError):
        codec.decrypt_payload(aes_encrypt_hex("plain text", key), key)
    with pytest.raises(DecryptError):
        codec.decrypt_payload(aes_encrypt_hex("{}", key), md5_hex("other"))

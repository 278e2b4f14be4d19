from __future__ import annotations

from pydilink._redact import redact_for_log


def test_redact_for_log_masks_credentials() -> None:
    payload = {
        "code": "0",
        "token": {"userId": "347678", "signToken": "SIG", "encryToken": "ENC"},
        "password": "pw",
        "nested": {"commandPwd": "E10ADC39", "sign": "A9993E36"},
        "items": [{"signToken": "SIG"}],
    }

    redacted = redact_for_log(payload)
    assert redacted["code"] == "0"
    assert redacted["password"] == "<redacted>"
    assert redacted["token"] == "<redacted>"
    assert redacted["nested"] == {"commandPwd": "<redacted>", "sign": "<redacted>"}
    assert redacted["items"] == [{"signToken": "<redacted>"}]
    assert payload["password"] == "pw"


def test_redact_for_log_reduces_wire_blobs_to_length() -> None:
    redacted = redact_for_log({"encryData": "DEADBEEF", "request": "F" + "A" * 99, "respondData": "ABCDEF"})
    assert redacted == {"encryData": "<8 chars>", "request": "<100 chars>", "respondData": "<6 chars>"}


def test_redact_for_log_scrubs_decoded_push_data() -> None:
    data = {"respondData": {"vin": "LGXCE4CB0P0000001", "latitudeDone": 52.1, "elecPercent": 64}}

    assert redact_for_log(data) == {
        "respondData": {"vin": "***0001", "latitudeDone": "<location>", "elecPercent": 64}
    }


def test_redact_for_log_masks_identifiers() -> None:
    redacted = redact_for_log({"identifier": "user@example.com", "userId": 347678, "imei": "123", "vin": None})
    assert redacted == {"identifier": "***.com", "userId": "***7678", "imei": "***", "vin": None}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"] == "x" * 10 + "...<600 chars>"


def test_redact_for_log_handles_scalars_and_bytes() -> None:
    assert redact_for_log(None) is None
    assert redact_for_log(3.5) == 3.5
    assert redact_for_log(b"\x00" * 32) == "<bytes:32>"
    assert redact_for_log(object).startswith("<class")

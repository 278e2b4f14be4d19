from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from pydilink._constants import BROKER_ENDPOINT
from pydilink._crypto.hashing import md5_hex
from pydilink._mqtt import (
    MqttBootstrap,
    MqttRuntime,
    bootstrap_from_session,
    build_client_id,
    build_mqtt_password,
    fetch_mqtt_bootstrap,
    parse_broker,
)
from pydilink.config import DeviceIdentity
from pydilink.orchestrator import CommandOrchestrator
from pydilink.session import Session, SessionManager


class _FakePahoClient:
    def __init__(self) -> None:
        self.credentials: list[tuple[str, str]] = []
        self.subscriptions: list[tuple[str, int]] = []

    def username_pw_set(self, username: str, password: str) -> None:
        self.credentials.append((username, password))

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscriptions.append((topic, qos))


def _bootstrap() -> MqttBootstrap:
    return MqttBootstrap(
        broker_host="emqoversea-eu.byd.auto",
        broker_port=8883,
        topic="oversea/res/347678",
        client_id="oversea_ABC",
        username="347678",
        sign_token="sign-token-1",
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("emqoversea-eu.byd.auto:8883", ("emqoversea-eu.byd.auto", 8883)),
        ("emqoversea-eu.byd.auto", ("emqoversea-eu.byd.auto", 8883)),
        ("ssl://broker.example:1884/mqtt", ("broker.example", 1884)),
        (" tcp://broker.example ", ("broker.example", 8883)),
    ],
)
def test_parse_broker(raw: str, expected: tuple[str, int]) -> None:
    assert parse_broker(raw) == expected


def test_parse_broker_rejects_empty() -> None:
    with pytest.raises(ValueError):
        parse_broker("  ")


def test_client_id_uses_imei_md5() -> None:
    device = DeviceIdentity(imei_md5="0123456789abcdef0123456789abcdef")
    assert build_client_id(device) == "oversea_0123456789ABCDEF0123456789ABCDEF"


def test_client_id_falls_back_to_hashed_imei() -> None:
    device = DeviceIdentity(imei="BANGCLE01234")
    assert build_client_id(device) == f"oversea_{md5_hex('BANGCLE01234')}"


def test_mqtt_password_format() -> None:
    password = build_mqtt_password("sign-token-1", "oversea_ABC", "347678", 1700000000)
    assert password == "1700000000" + md5_hex("sign-token-1oversea_ABC3476781700000000")
    assert _bootstrap().password(1700000000) == password


def test_bootstrap_from_session() -> None:
    session = Session(user_id="347678", sign_token="sign-token-1", encry_token="encry-token-1")
    bootstrap = bootstrap_from_session(session, DeviceIdentity(), "emqoversea-eu.byd.auto:8883")

    assert bootstrap.topic == "oversea/res/347678"
    assert bootstrap.username == "347678"
    assert bootstrap.client_id.startswith("oversea_")
    assert "sign-token-1" not in repr(bootstrap)


@pytest.mark.asyncio
async def test_fetch_mqtt_bootstrap(sessions: SessionManager, orchestrator: CommandOrchestrator, cloud) -> None:
    session = await sessions.login()
    cloud.reply(BROKER_ENDPOINT, {"emqBorker": "emqoversea-eu.byd.auto:8883"})

    bootstrap = await fetch_mqtt_bootstrap(orchestrator, session, DeviceIdentity())

    assert bootstrap.broker_host == "emqoversea-eu.byd.auto"
    assert bootstrap.broker_port == 8883
    assert bootstrap.topic == f"oversea/res/{session.user_id}"


@pytest.mark.asyncio
async def test_runtime_hands_messages_to_loop() -> None:
    received: list[tuple[bytes, str]] = []
    runtime = MqttRuntime(loop=asyncio.get_running_loop(), on_message=lambda payload, topic: received.append((payload, topic)))

    runtime._handle_message(None, None, SimpleNamespace(payload=bytearray(b"ABCD"), topic="oversea/res/347678"))
    assert received == []
    await asyncio.sleep(0)

    assert received == [(b"ABCD", "oversea/res/347678")]


@pytest.mark.asyncio
async def test_runtime_subscribes_on_connect() -> None:
    runtime = MqttRuntime(loop=asyncio.get_running_loop(), on_message=lambda *_: None)
    runtime._bootstrap = _bootstrap()
    runtime._running = True
    client = _FakePahoClient()

    runtime._handle_connect(client, None, None, SimpleNamespace(is_failure=True), None)
    assert client.subscriptions == []
    assert not runtime.is_connected

    runtime._handle_connect(client, None, None, SimpleNamespace(is_failure=False), None)
    assert client.subscriptions == [("oversea/res/347678", 0)]
    assert runtime.is_connected


@pytest.mark.asyncio
async def test_runtime_refreshes_password_on_disconnect(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("pydilink._mqtt.time", SimpleNamespace(time=lambda: 1700000123.5))
    runtime = MqttRuntime(loop=asyncio.get_running_loop(), on_message=lambda *_: None)
    runtime._bootstrap = _bootstrap()
    runtime._running = True
    runtime._connected = True
    client: Any = _FakePahoClient()

    runtime._handle_disconnect(client, None, None, "keepalive timeout", None)

    assert not runtime.is_connected
    assert client.credentials == [("347678", _bootstrap().password(1700000123))]


@pytest.mark.asyncio
async def test_runtime_keeps_credentials_after_stop() -> None:
    runtime = MqttRuntime(loop=asyncio.get_running_loop(), on_message=lambda *_: None)
    runtime._bootstrap = _bootstrap()
    client = _FakePahoClient()

    runtime._handle_disconnect(client, None, None, "normal", None)

    assert client.credentials == []

"""MQTT bootstrap and the threaded paho-mqtt runtime."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import paho.mqtt.client as mqtt

from pydilink._constants import MQTT_CLIENT_ID_PREFIX, MQTT_DEFAULT_PORT, MQTT_TOPIC_PREFIX
from pydilink._crypto.hashing import md5_hex
from pydilink.config import DeviceIdentity
from pydilink.session import Session

if TYPE_CHECKING:
    from pydilink.orchestrator import CommandOrchestrator

_logger = logging.getLogger(__name__)


def parse_broker(raw_broker: str) -> tuple[str, int]:
    """Split a broker address into host and port.

    Accepts ``host``, ``host:port`` and URL forms such as
    ``ssl://host:port/path``.
    """
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")
    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]
    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, MQTT_DEFAULT_PORT


def build_client_id(device: DeviceIdentity) -> str:
    """``oversea_`` + uppercase ``imei_md5``, or ``md5(imei)`` when it is all zeros."""
    imei_md5 = (device.imei_md5 or "").strip().upper()
    if imei_md5 and set(imei_md5) != {"0"}:
        return f"{MQTT_CLIENT_ID_PREFIX}{imei_md5}"
    return f"{MQTT_CLIENT_ID_PREFIX}{md5_hex(device.imei)}"


def build_mqtt_password(sign_token: str, client_id: str, user_id: str, ts_seconds: int) -> str:
    """``<ts>`` + ``md5(sign_token + client_id + user_id + ts)``."""
    ts_text = str(ts_seconds)
    return f"{ts_text}{md5_hex(f'{sign_token}{client_id}{user_id}{ts_text}')}"


@dataclass(frozen=True)
class MqttBootstrap:
    """Everything needed to connect to the push broker."""

    broker_host: str
    broker_port: int
    topic: str
    client_id: str
    username: str
    sign_token: str = field(repr=False)

    def password(self, ts_seconds: int | None = None) -> str:
        """Fresh password; it embeds a timestamp so each connect needs a new one."""
        ts = int(time.time()) if ts_seconds is None else ts_seconds
        return build_mqtt_password(self.sign_token, self.client_id, self.username, ts)


def bootstrap_from_session(session: Session, device: DeviceIdentity, broker: str) -> MqttBootstrap:
    host, port = parse_broker(broker)
    return MqttBootstrap(
        broker_host=host,
        broker_port=port,
        topic=f"{MQTT_TOPIC_PREFIX}{session.user_id}",
        client_id=build_client_id(device),
        username=session.user_id,
        sign_token=session.sign_token,
    )


async def fetch_mqtt_bootstrap(
    orchestrator: CommandOrchestrator,
    session: Session,
    device: DeviceIdentity,
) -> MqttBootstrap:
    """Look up the broker and derive connection details for *session*."""
    broker = await orchestrator.fetch_broker()
    return bootstrap_from_session(session, device, broker)


class MqttRuntime:
    """Threaded paho-mqtt client that hands raw payloads to the event loop.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop
        Loop that receives messages via ``call_soon_threadsafe``.
    on_message : callable
        ``(payload, topic)`` callback, invoked on the loop thread.
    keepalive : int
        MQTT keepalive in seconds.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[bytes, str], None],
        keepalive: int = 120,
    ) -> None:
        self._loop = loop
        self._on_message = on_message
        self._keepalive = keepalive
        self._client: mqtt.Client | None = None
        self._bootstrap: MqttBootstrap | None = None
        self._running = False
        self._connected = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._running and self._connected

    def start(self, bootstrap: MqttBootstrap) -> None:
        """Connect, subscribe and start the network thread. Blocking."""
        self.stop()
        _logger.debug(
            "MQTT start host=%s port=%s topic=%s client_id=%s",
            bootstrap.broker_host,
            bootstrap.broker_port,
            bootstrap.topic,
            bootstrap.client_id,
        )
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=bootstrap.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(_logger)
        client.username_pw_set(bootstrap.username, bootstrap.password())
        client.tls_set()

        client.on_connect = self._handle_connect
        client.on_message = self._handle_message
        client.on_disconnect = self._handle_disconnect

        self._bootstrap = bootstrap
        client.connect(bootstrap.broker_host, bootstrap.broker_port, keepalive=self._keepalive)
        client.loop_start()
        self._client = client
        self._running = True

    def stop(self) -> None:
        """Disconnect and join the network thread. Blocking."""
        client = self._client
        was_running = self._running
        self._client = None
        self._running = False
        self._connected = False
        if client is None:
            return
        try:
            if was_running:
                client.disconnect()
        finally:
            client.loop_stop()
            _logger.debug("MQTT network loop stopped")

    def _handle_connect(self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any) -> None:
        if reason_code.is_failure:
            _logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._connected = True
        if self._bootstrap is not None:
            _logger.debug("MQTT connected, subscribing %s", self._bootstrap.topic)
            client.subscribe(self._bootstrap.topic, qos=0)

    def _handle_disconnect(
        self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        self._connected = False
        if not self._running or self._bootstrap is None:
            return
        _logger.debug("MQTT disconnected (%s); refreshing credentials for reconnect", reason_code)
        client.username_pw_set(self._bootstrap.username, self._bootstrap.password())

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._loop.call_soon_threadsafe(self._on_message, bytes(msg.payload), msg.topic)

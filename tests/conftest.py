from __future__ import annotations

import asyncio
import json
from collections import defaultdict, deque
from collections.abc import Mapping
from typing import Any

import pytest

from pydilink._constants import LOGIN_ENDPOINT
from pydilink._crypto import CipherEnvelope, CipherTables
from pydilink._crypto.aes import aes_decrypt_utf8, aes_encrypt_hex
from pydilink._crypto.hashing import md5_hex, password_key
from pydilink.codec import ApiResponse, ProtocolCodec
from pydilink.config import DilinkConfig
from pydilink.orchestrator import CommandOrchestrator
from pydilink.session import SessionManager


def _synthetic_tables() -> CipherTables:
    """Tables with the real sizes whose round network is the identity.

    Each round word carries its input byte in one lane only, the XOR tables
    xor the two nibbles of their index and the substitution tables are the
    identity per segment, so encryption reduces to the row rotation of the
    final substitution and decryption rotates it back.
    """
    round_table = bytearray(0x28000)
    for block in range(160):
        for value in range(256):
            round_table[(value + block * 256) * 4 + (block % 4)] = value
    xor_table = bytes((x & 0xF) ^ (x >> 4) for x in range(256)) * 960
    substitution = bytes(range(256)) * 16
    perm = bytes(8)
    return CipherTables(
        inv_round=bytes(round_table),
        inv_xor=xor_table,
        inv_first=substitution,
        round=bytes(round_table),
        xor=xor_table,
        final=substitution,
        perm_decrypt=perm,
        perm_encrypt=perm,
    )


@pytest.fixture(scope="session")
def tables() -> CipherTables:
    return _synthetic_tables()


@pytest.fixture
def envelope(tables: CipherTables) -> CipherEnvelope:
    return CipherEnvelope(tables=tables)


@pytest.fixture
def codec(envelope: CipherEnvelope) -> ProtocolCodec:
    return ProtocolCodec(envelope)


@pytest.fixture
def config() -> DilinkConfig:
    return DilinkConfig(
        username="user@example.com",
        password="secret",
        country_code="NL",
        language="en",
        control_pin="123456",
        mqtt_enabled=False,
        push_timeout=0.05,
        poll_attempts=3,
        poll_interval=0.0,
        rate_limit_retries=3,
        rate_limit_delay=0.0,
    )


class FakeCloud:
    """In-memory server speaking the session/payload layer of the protocol.

    Replies are scripted per endpoint: a ``str`` is a failure code, any
    other value is a successful ``respondData`` payload (``None`` omits
    it). The last scripted reply repeats.
    """

    USER_ID = "347678"

    def __init__(self, config: DilinkConfig) -> None:
        self.config = config
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.logins = 0
        self.login_code = "0"
        self.login_respond_data: str | None = None
        self.login_token: dict[str, Any] | None = None
        self._encry_token = ""
        self._rotated_key: str | None = None
        self._sticky_rotation = False
        self._replies: dict[str, deque[Any]] = defaultdict(deque)

    def reply(self, endpoint: str, *replies: Any) -> None:
        self._replies[endpoint].extend(replies)

    def rotate_key(self, *, sticky: bool = False) -> None:
        """Encrypt further replies with a key the client does not hold.

        The next login restores the session key unless *sticky* is set.
        """
        self._rotated_key = md5_hex("rotated-elsewhere")
        self._sticky_rotation = sticky

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.calls]

    def count(self, endpoint: str) -> int:
        return self.endpoints().count(endpoint)

    def inner(self, index: int) -> dict[str, Any]:
        """Decrypted inner payload of the *index*-th recorded call."""
        _endpoint, outer = self.calls[index]
        return json.loads(aes_decrypt_utf8(outer["encryData"], md5_hex(self._encry_token)))

    def inners(self, endpoint: str) -> list[dict[str, Any]]:
        return [self.inner(i) for i, (name, _) in enumerate(self.calls) if name == endpoint]

    async def post_secure(self, endpoint: str, outer_payload: Mapping[str, Any]) -> ApiResponse:
        await asyncio.sleep(0)
        self.calls.append((endpoint, dict(outer_payload)))
        if endpoint == LOGIN_ENDPOINT:
            return self._login()

        queue = self._replies.get(endpoint)
        if not queue:
            raise AssertionError(f"No reply scripted for {endpoint}")
        reply = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(reply, str):
            return ApiResponse(code=reply, message=f"error {reply}", respond_data=None, raw={"code": reply})
        if reply is None:
            return ApiResponse(code="0", message="", respond_data=None, raw={"code": "0"})
        respond = aes_encrypt_hex(json.dumps(reply), self._rotated_key or md5_hex(self._encry_token))
        return ApiResponse(code="0", message="", respond_data=respond, raw={"code": "0"})

    def _login(self) -> ApiResponse:
        self.logins += 1
        if not self._sticky_rotation:
            self._rotated_key = None
        if self.login_code != "0":
            return ApiResponse(code=self.login_code, message="login rejected", respond_data=None, raw={})
        if self.login_respond_data is not None:
            return ApiResponse(code="0", message="", respond_data=self.login_respond_data, raw={})
        self._encry_token = f"encry-token-{self.logins}"
        token = self.login_token or {
            "userId": self.USER_ID,
            "signToken": f"sign-token-{self.logins}",
            "encryToken": self._encry_token,
        }
        respond = aes_encrypt_hex(json.dumps({"token": token}), password_key(self.config.password))
        return ApiResponse(code="0", message="", respond_data=respond, raw={})


@pytest.fixture
def cloud(config: DilinkConfig) -> FakeCloud:
    return FakeCloud(config)


@pytest.fixture
def sessions(config: DilinkConfig, codec: ProtocolCodec, cloud: FakeCloud) -> SessionManager:
    return SessionManager(config, codec, cloud)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def orchestrator(
    config: DilinkConfig,
    codec: ProtocolCodec,
    cloud: FakeCloud,
    sessions: SessionManager,
    sleeps: list[float],
) -> CommandOrchestrator:
    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)
        await asyncio.sleep(0)

    return CommandOrchestrator(config, codec, cloud, sessions, sleep=_record_sleep)

"""Authenticated session state and its lifecycle."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from pydilink._constants import LOGIN_ENDPOINT, SESSION_EXPIRED_CODES
from pydilink._crypto.hashing import md5_hex, password_key
from pydilink._redact import redact_for_log
from pydilink.exceptions import (
    AuthError,
    CryptoError,
    EmptyPayloadError,
    SessionExpiredError,
    TransportError,
)
from pydilink.models.token import AuthToken

if TYPE_CHECKING:
    from pydilink._transport import Transport
    from pydilink.codec import ProtocolCodec
    from pydilink.config import DilinkConfig

_logger = logging.getLogger(__name__)


class Session(BaseModel):
    """Tokens of an authenticated session.

    Immutable: re-login produces a new instance instead of updating this one.

    Parameters
    ----------
    user_id : str
        The authenticated user's ID.
    sign_token : str
        Token used for request signature derivation.
    encry_token : str
        Token used for content key derivation.
    created_at : float
        ``time.monotonic()`` at creation.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    user_id: str = Field(min_length=1)
    sign_token: str = Field(min_length=1)
    encry_token: str = Field(min_length=1)
    created_at: float = Field(default_factory=time.monotonic)

    def content_key(self) -> str:
        """AES key for inner payloads: ``MD5(encry_token)`` in uppercase hex."""
        return md5_hex(self.encry_token)

    def sign_key(self) -> str:
        """Signature password: ``MD5(sign_token)`` in uppercase hex."""
        return md5_hex(self.sign_token)

    @property
    def age(self) -> float:
        """Seconds since the session was created."""
        return time.monotonic() - self.created_at


class SessionState(enum.Enum):
    LOGGED_OUT = "logged_out"
    LOGGING_IN = "logging_in"
    AUTHENTICATED = "authenticated"


ConnectedListener = Callable[[Session], Any]
DisconnectedListener = Callable[[str], Any]


def parse_login_token(payload: Any) -> AuthToken:
    """Extract the token block from a decrypted login payload.

    Raises
    ------
    AuthError
        If any of ``userId``/``signToken``/``encryToken`` is missing.
    """
    token = payload.get("token") if isinstance(payload, dict) else None
    if not isinstance(token, dict) or not all(token.get(k) for k in ("userId", "signToken", "encryToken")):
        raise AuthError("Login response missing token fields", endpoint=LOGIN_ENDPOINT)
    return AuthToken(
        user_id=str(token["userId"]),
        sign_token=str(token["signToken"]),
        encry_token=str(token["encryToken"]),
        raw=token,
    )


class SessionManager:
    """Own the session: login, expiry detection and re-authentication.

    Every non-login call reads :attr:`session` (or :meth:`require_session`)
    right before building its request, so a re-login between two requests
    is picked up without any caller holding a stale copy.
    """

    def __init__(self, config: DilinkConfig, codec: ProtocolCodec, transport: Transport) -> None:
        self._config = config
        self._codec = codec
        self._transport = transport
        self._session: Session | None = None
        self._state = SessionState.LOGGED_OUT
        self._lock = asyncio.Lock()
        self._generation = 0
        self._connected: list[ConnectedListener] = []
        self._disconnected: list[DisconnectedListener] = []

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._state

    def add_listener(
        self,
        *,
        on_connected: ConnectedListener | None = None,
        on_disconnected: DisconnectedListener | None = None,
    ) -> None:
        """Register callbacks fired after login and after invalidation."""
        if on_connected is not None:
            self._connected.append(on_connected)
        if on_disconnected is not None:
            self._disconnected.append(on_disconnected)

    @staticmethod
    def is_session_expired_code(code: str) -> bool:
        return str(code) in SESSION_EXPIRED_CODES

    def require_session(self) -> Session:
        """Return the current session.

        Raises
        ------
        SessionExpiredError
            If there is no session.
        """
        if self._session is None:
            raise SessionExpiredError("No active session; login required")
        return self._session

    async def ensure_session(self) -> Session:
        """Return the current session, logging in first when logged out."""
        if self._session is not None:
            return self._session
        return await self.login()

    async def login(self) -> Session:
        """Authenticate and store a fresh session.

        Concurrent callers share a single in-flight login: whoever waits on
        the lock while another login succeeds gets that session back.

        Raises
        ------
        AuthError
            If the server rejects the credentials or omits token fields.
        DecryptError
            If the token payload cannot be decrypted.
        TransportError
            On HTTP failure.
        """
        generation = self._generation
        async with self._lock:
            if self._generation != generation and self._session is not None:
                return self._session

            self._state = SessionState.LOGGING_IN
            try:
                session = await self._login()
            except BaseException:
                self._state = SessionState.LOGGED_OUT
                raise

            self._session = session
            self._generation += 1
            self._state = SessionState.AUTHENTICATED

        _logger.info("Logged in as user %s", session.user_id)
        self._emit(self._connected, session)
        return session

    async def _login(self) -> Session:
        config = self._config
        outer = self._codec.build_login_envelope(
            config.username,
            config.password,
            config.country_code,
            config.language,
            config.device,
        )
        response = await self._transport.post_secure(LOGIN_ENDPOINT, outer)
        if not response.ok:
            raise AuthError(
                f"Login failed: code={response.code} message={response.message}",
                code=response.code,
                endpoint=LOGIN_ENDPOINT,
            )
        if response.respond_data is None:
            raise AuthError("Login response missing respondData", endpoint=LOGIN_ENDPOINT)

        payload = self._codec.decrypt_payload(response.respond_data, password_key(config.password))
        _logger.debug("Login respondData decoded parsed=%s", redact_for_log(payload))
        token = parse_login_token(payload)
        return Session(
            user_id=token.user_id,
            sign_token=token.sign_token,
            encry_token=token.encry_token,
        )

    def invalidate(self, reason: str = "invalidated") -> None:
        """Drop the session and notify disconnect listeners."""
        if self._session is None:
            return
        self._session = None
        self._state = SessionState.LOGGED_OUT
        _logger.info("Session cleared (%s)", reason)
        self._emit(self._disconnected, reason)

    async def handle_expiry(self, code: str, *, stale: Session | None = None) -> bool:
        """Clear the session and log in again.

        Parameters
        ----------
        code : str
            Server code (or pseudo-code such as ``"push-decrypt"``) that
            signalled the expiry; used for logging only.
        stale : Session or None
            The session the failing request was built with. When another
            caller already replaced it, no second login is made.

        Returns
        -------
        bool
            Whether a valid session is available afterwards.
        """
        current = self._session
        if stale is not None and current is not None and current is not stale:
            _logger.debug("Session already renewed, skipping re-login for code=%s", code)
            return True

        _logger.info("Session expired (code=%s), re-authenticating", code)
        self.invalidate(reason=f"expired:{code}")
        try:
            await self.login()
        except (AuthError, CryptoError, EmptyPayloadError, TransportError) as exc:
            _logger.warning("Re-authentication after code=%s failed: %s", code, exc)
            return False
        return True

    @staticmethod
    def _emit(listeners: list[Callable[[Any], Any]], arg: Any) -> None:
        for listener in list(listeners):
            try:
                listener(arg)
            except Exception:
                _logger.exception("Session listener %r failed", listener)

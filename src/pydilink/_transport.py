"""HTTP transport with envelope wrapping and cookie affinity."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from http.cookies import CookieError, SimpleCookie
from typing import Any, Protocol

import aiohttp

from pydilink._constants import USER_AGENT
from pydilink._redact import redact_for_log
from pydilink.codec import ApiResponse, ProtocolCodec
from pydilink.exceptions import TransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by the session and orchestrator.

    Tests substitute fakes that return canned :class:`ApiResponse` objects.
    """

    async def post_secure(self, endpoint: str, outer_payload: Mapping[str, Any]) -> ApiResponse: ...


class SecureTransport:
    """POST outer objects through the envelope cipher.

    Parameters
    ----------
    base_url : str
        Host prefix for every endpoint path.
    codec : ProtocolCodec
        Envelope encoder/decoder.
    http_session : aiohttp.ClientSession
        Shared HTTP session; not closed by the transport.
    timeout : float
        Total per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        codec: ProtocolCodec,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 180.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._codec = codec
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._cookies: dict[str, str] = {}

    def _update_cookies(self, headers: Any) -> None:
        for raw in headers.getall("Set-Cookie", []):
            cookie: SimpleCookie = SimpleCookie()
            try:
                cookie.load(raw)
            except CookieError:
                _logger.debug("Ignoring unparsable Set-Cookie header")
                continue
            for key, morsel in cookie.items():
                self._cookies[key] = morsel.value

    def _cookie_header(self) -> str:
        return "; ".join(f"{k}={v}" for k, v in self._cookies.items())

    async def post_secure(self, endpoint: str, outer_payload: Mapping[str, Any]) -> ApiResponse:
        """Send *outer_payload* to *endpoint* and decode the reply.

        Raises
        ------
        TransportError
            On network failure, non-200 status or a body that is not the
            ``{"response": ...}`` JSON wrapper.
        """
        body = json.dumps(self._codec.encode_request(outer_payload))
        headers: dict[str, str] = {
            "accept-encoding": "identity",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        cookie = self._cookie_header()
        if cookie:
            headers["cookie"] = cookie

        url = f"{self._base_url}{endpoint}"
        _logger.debug("POST %s outer=%s", url, redact_for_log(outer_payload))

        try:
            async with self._http.post(url, data=body, headers=headers, timeout=self._timeout) as resp:
                self._update_cookies(resp.headers)
                text = await resp.text()
                if resp.status != 200:
                    raise TransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except TransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise TransportError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

        try:
            wrapper = json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransportError(f"Invalid JSON from {endpoint}: {text[:200]}", endpoint=endpoint) from exc
        if not isinstance(wrapper, dict):
            raise TransportError(f"Unexpected body from {endpoint}", endpoint=endpoint)

        response = self._codec.decode_response(wrapper)
        _logger.debug("Response %s code=%s message=%s", endpoint, response.code, response.message)
        return response

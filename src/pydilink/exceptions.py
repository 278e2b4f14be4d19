"""Custom exception hierarchy for pydilink."""

from __future__ import annotations


class DilinkError(Exception):
    """Base exception for all pydilink errors."""


class ConfigError(DilinkError):
    """Invalid or missing configuration."""


class CryptoError(DilinkError):
    """Encryption or decryption failure."""


class CipherError(CryptoError):
    """Envelope cipher failure (bad ciphertext length, malformed framing)."""


class TableLoadError(CipherError):
    """Cipher lookup tables are missing or have the wrong size.

    This is the only error treated as fatal: the client cannot talk to the
    cloud at all without valid tables.
    """


class DecryptError(CryptoError):
    """Inner payload could not be decrypted or parsed.

    Usually means the content key is stale (the session was replaced on the
    server side), so callers treat it as a re-authentication hint.
    """


class EmptyPayloadError(DilinkError):
    """Response wrapper carried no envelope text."""


class TransportError(DilinkError):
    """HTTP-level failure (network, non-200, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class ApiError(DilinkError):
    """API returned a non-zero code (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        super().__init__(message)


class AuthError(ApiError):
    """Login rejected by the server."""


class SessionExpiredError(AuthError):
    """Session token rejected and could not be recovered.

    Raised when a post-login call fails with a session-expired code
    (``1002``/``1005``/``1010``) and the single re-login attempt did not
    fix it, or when a call is made without any session at all.
    """


class RateLimitedError(ApiError):
    """Server kept answering code 6024 after all automatic retries."""


class EndpointNotSupportedError(ApiError):
    """Endpoint not supported for this vehicle/region (code 1001).

    The orchestrator memoizes the ``(vin, endpoint)`` pair and never calls
    it again within the process run.
    """


class ControlPasswordError(ApiError):
    """Remote command rejected because of the control password.

    Covers ``5005`` (wrong password), ``5006`` (locked for the day) and a
    missing control PIN detected before any request is sent.
    """


class RemoteControlUnavailableError(ApiError):
    """Remote-control service is unavailable (code 1009)."""


class RemoteControlFailedError(ApiError):
    """Remote command completed with a failure outcome."""


class NoCorrelationIdError(ApiError):
    """Trigger call succeeded but returned no ``requestSerial``."""


class PollTimeoutError(ApiError):
    """Polling exhausted its attempt budget without a ready response."""

"""pydilink - Async Python client for the encrypted DiLink vehicle cloud API."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pydilink")
except PackageNotFoundError:
    __version__ = "0+local"
from pydilink.client import DilinkClient
from pydilink.config import DeviceIdentity, DilinkConfig
from pydilink.exceptions import (
    ApiError,
    AuthError,
    CipherError,
    ConfigError,
    ControlPasswordError,
    CryptoError,
    DecryptError,
    DilinkError,
    EmptyPayloadError,
    EndpointNotSupportedError,
    NoCorrelationIdError,
    PollTimeoutError,
    RateLimitedError,
    RemoteControlFailedError,
    RemoteControlUnavailableError,
    SessionExpiredError,
    TableLoadError,
    TransportError,
)
from pydilink.models import (
    AuthToken,
    CommandOutcome,
    CommandResult,
    OperationResult,
    PushMessage,
    RemoteCommand,
    ResultSource,
    Vehicle,
)
from pydilink.session import Session, SessionState

__all__ = [
    "__version__",
    "ApiError",
    "AuthError",
    "AuthToken",
    "CipherError",
    "CommandOutcome",
    "CommandResult",
    "ConfigError",
    "ControlPasswordError",
    "CryptoError",
    "DecryptError",
    "DeviceIdentity",
    "DilinkClient",
    "DilinkConfig",
    "DilinkError",
    "EmptyPayloadError",
    "EndpointNotSupportedError",
    "NoCorrelationIdError",
    "OperationResult",
    "PollTimeoutError",
    "PushMessage",
    "RateLimitedError",
    "RemoteCommand",
    "RemoteControlFailedError",
    "RemoteControlUnavailableError",
    "ResultSource",
    "Session",
    "SessionExpiredError",
    "SessionState",
    "TableLoadError",
    "TransportError",
    "Vehicle",
]

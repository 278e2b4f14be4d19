"""Trigger, push-wait and poll orchestration for cloud operations.

Live data and remote commands are asynchronous on the server side: a
*trigger* call returns a ``requestSerial``, the result then arrives either as
a push message or by polling a companion endpoint with the same serial.
:class:`CommandOrchestrator` turns that into one awaitable per operation.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydilink._constants import (
    BROKER_ENDPOINT,
    CONTROL_PASSWORD_ERROR_CODES,
    ENDPOINT_NOT_SUPPORTED_CODES,
    ENERGY_ENDPOINT,
    GPS_POLL_ENDPOINT,
    GPS_TRIGGER_ENDPOINT,
    RATE_LIMIT_CODE,
    REALTIME_POLL_ENDPOINT,
    REALTIME_TRIGGER_ENDPOINT,
    REMOTE_CONTROL_ENDPOINTS,
    REMOTE_CONTROL_POLL_ENDPOINT,
    REMOTE_CONTROL_SERVICE_ERROR_CODES,
    REMOTE_CONTROL_TRIGGER_ENDPOINT,
    VEHICLE_LIST_ENDPOINT,
)
from pydilink._redact import redact_for_log
from pydilink._transport import Transport
from pydilink.codec import ApiResponse, ProtocolCodec
from pydilink.config import DilinkConfig
from pydilink.correlation import CorrelationTable
from pydilink.exceptions import (
    ApiError,
    ControlPasswordError,
    CryptoError,
    DecryptError,
    DilinkError,
    EmptyPayloadError,
    EndpointNotSupportedError,
    NoCorrelationIdError,
    PollTimeoutError,
    RateLimitedError,
    RemoteControlUnavailableError,
    SessionExpiredError,
    TransportError,
)
from pydilink.models.control import RemoteCommand, is_command_complete
from pydilink.models.results import CommandResult, OperationResult, ResultSource
from pydilink.session import Session, SessionManager

_logger = logging.getLogger(__name__)

KIND_REALTIME = "realtime"
KIND_GPS = "gps"
KIND_ENERGY = "energy"
KIND_REMOTE_CONTROL = "remote_control"

DataSink = Callable[[str, str, Any], None]

_TIRE_PRESSURE_FIELDS = (
    "leftFrontTirepressure",
    "rightFrontTirepressure",
    "leftRearTirepressure",
    "rightRearTirepressure",
)

# Errors a poll attempt must not swallow.
_FATAL_POLL_ERRORS = (
    SessionExpiredError,
    RateLimitedError,
    EndpointNotSupportedError,
    ControlPasswordError,
    RemoteControlUnavailableError,
)


def _safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if result != result else result


# ------------------------------------------------------------------
# Ready predicates
# ------------------------------------------------------------------


def is_realtime_ready(vehicle_info: Any) -> bool:
    """Whether a realtime payload carries real telemetry.

    ``onlineState == 2`` (vehicle offline) is never ready. Otherwise any
    positive tire pressure, a positive ``time`` or a positive
    ``enduranceMileage`` is enough.
    """
    if not isinstance(vehicle_info, Mapping) or not vehicle_info:
        return False
    if _safe_float(vehicle_info.get("onlineState")) == 2:
        return False
    if any((_safe_float(vehicle_info.get(name)) or 0) > 0 for name in _TIRE_PRESSURE_FIELDS):
        return True
    if (_safe_float(vehicle_info.get("time")) or 0) > 0:
        return True
    return (_safe_float(vehicle_info.get("enduranceMileage")) or 0) > 0


def is_gps_ready(gps_info: Any) -> bool:
    """GPS payload is ready once it holds anything besides ``requestSerial``."""
    if not isinstance(gps_info, Mapping) or not gps_info:
        return False
    return set(gps_info) != {"requestSerial"}


# ------------------------------------------------------------------
# Operation descriptions
# ------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class OperationSpec:
    """Static description of a trigger/poll operation.

    Parameters
    ----------
    kind : str
        Correlation kind; push messages are matched on it.
    trigger_endpoint, poll_endpoint : str
        Endpoint paths.
    ready : callable
        Predicate deciding whether a payload is a final result.
    use_push : bool
        Wait for a push message before polling.
    fallback_fields : tuple of str
        Realtime-cache fields served when the endpoint is unsupported.
    """

    kind: str
    trigger_endpoint: str
    poll_endpoint: str
    ready: Callable[[Any], bool]
    use_push: bool = False
    fallback_fields: tuple[str, ...] = ()


REALTIME_OPERATION = OperationSpec(
    kind=KIND_REALTIME,
    trigger_endpoint=REALTIME_TRIGGER_ENDPOINT,
    poll_endpoint=REALTIME_POLL_ENDPOINT,
    ready=is_realtime_ready,
    use_push=True,
)

GPS_OPERATION = OperationSpec(
    kind=KIND_GPS,
    trigger_endpoint=GPS_TRIGGER_ENDPOINT,
    poll_endpoint=GPS_POLL_ENDPOINT,
    ready=is_gps_ready,
    fallback_fields=("latitudeDone", "longitudeDone", "altitude", "heading"),
)

REMOTE_CONTROL_OPERATION = OperationSpec(
    kind=KIND_REMOTE_CONTROL,
    trigger_endpoint=REMOTE_CONTROL_TRIGGER_ENDPOINT,
    poll_endpoint=REMOTE_CONTROL_POLL_ENDPOINT,
    ready=is_command_complete,
    use_push=True,
)

ENERGY_FALLBACK_FIELDS = ("totalEnergy", "nearestEnergyConsumption", "nearestEnergyConsumptionUnit", "recent50kmEnergy")


# ------------------------------------------------------------------
# Per-VIN state
# ------------------------------------------------------------------


class UnsupportedEndpoints:
    """Endpoints the server declared unsupported, per VIN.

    Entries never expire within a process run.
    """

    def __init__(self) -> None:
        self._by_vin: dict[str, set[str]] = {}

    def mark(self, vin: str, endpoint: str) -> None:
        self._by_vin.setdefault(vin, set()).add(endpoint)

    def is_unsupported(self, vin: str | None, endpoint: str) -> bool:
        return vin is not None and endpoint in self._by_vin.get(vin, ())


class RealtimeCache:
    """Last decoded realtime payload per VIN."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def update(self, vin: str, payload: Mapping[str, Any]) -> None:
        self._data[vin] = dict(payload)

    def get(self, vin: str) -> dict[str, Any] | None:
        return self._data.get(vin)

    def subset(self, vin: str, fields: tuple[str, ...]) -> dict[str, Any]:
        """Available values of *fields*, skipping blanks and ``"--"``."""
        cached = self._data.get(vin) or {}
        return {
            name: cached[name]
            for name in fields
            if cached.get(name) is not None and str(cached[name]).strip() not in {"", "--"}
        }


@dataclasses.dataclass
class _OperationContext:
    """Budget shared by every request of one logical operation."""

    recovered: bool = False


def _extract_serial(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    serial = payload.get("requestSerial")
    if isinstance(serial, (str, int)) and str(serial).strip():
        return str(serial).strip()
    return None


class CommandOrchestrator:
    """Run cloud operations through trigger, push-wait and poll phases.

    Parameters
    ----------
    config : DilinkConfig
        Tunables (timeouts, attempt budgets) and device identity.
    codec : ProtocolCodec
        Request/response codec.
    transport : Transport
        HTTP transport.
    sessions : SessionManager
        Session owner; consulted before every request.
    correlations : CorrelationTable or None
        Shared correlation table. Created when omitted.
    on_data : callable or None
        ``(vin, kind, payload)`` sink for realtime payloads.
    """

    def __init__(
        self,
        config: DilinkConfig,
        codec: ProtocolCodec,
        transport: Transport,
        sessions: SessionManager,
        *,
        correlations: CorrelationTable | None = None,
        on_data: DataSink | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._codec = codec
        self._transport = transport
        self._sessions = sessions
        self._sleep = sleep
        self._on_data = on_data
        self._push_available: Callable[[], bool] = lambda: False
        self.correlations = correlations if correlations is not None else CorrelationTable()
        self.unsupported = UnsupportedEndpoints()
        self.realtime_cache = RealtimeCache()

    def set_push_available(self, predicate: Callable[[], bool]) -> None:
        """Install the check telling whether the push transport is running."""
        self._push_available = predicate

    # ------------------------------------------------------------------
    # Request primitives
    # ------------------------------------------------------------------

    def _build_inner(self, vin: str | None, request_serial: str | None, extras: Mapping[str, str]) -> dict[str, str]:
        return self._codec.build_inner(self._config.device, vin=vin, request_serial=request_serial, **extras)

    async def _post(self, endpoint: str, inner: Mapping[str, Any]) -> tuple[ApiResponse, str, Session]:
        session = self._sessions.require_session()
        envelope, content_key = self._codec.build_session_envelope(
            session,
            self._config.country_code,
            self._config.language,
            self._config.device,
            inner,
        )
        response = await self._transport.post_secure(endpoint, envelope)
        return response, content_key, session

    async def _request(
        self,
        endpoint: str,
        *,
        vin: str | None = None,
        request_serial: str | None = None,
        extras: Mapping[str, str] | None = None,
        ctx: _OperationContext | None = None,
    ) -> Any:
        """Send one logical request and return its decrypted payload.

        Session expiry, signalled by a code or by undecryptable data, is
        recovered at most once per *ctx*; rate limiting is
        retried up to ``rate_limit_retries`` attempts.
        """
        ctx = ctx if ctx is not None else _OperationContext()
        extras = extras or {}
        rate_limited = 0
        while True:
            inner = self._build_inner(vin, request_serial, extras)
            response, content_key, session = await self._post(endpoint, inner)
            if response.ok:
                if response.respond_data is None:
                    return {}
                try:
                    payload = self._codec.decrypt_payload(response.respond_data, content_key)
                except DecryptError:
                    # A key rotated server-side shows up as undecryptable data.
                    if ctx.recovered:
                        raise
                    ctx.recovered = True
                    _logger.info("%s respondData not decryptable, renewing session", endpoint)
                    if not await self._sessions.handle_expiry("decrypt", stale=session):
                        raise
                    continue
                _logger.debug("%s respondData=%s", endpoint, redact_for_log(payload))
                return payload

            code = response.code
            if self._sessions.is_session_expired_code(code):
                if ctx.recovered:
                    raise SessionExpiredError(
                        f"{endpoint} failed: session expired again (code={code})",
                        code=code,
                        endpoint=endpoint,
                    )
                ctx.recovered = True
                if not await self._sessions.handle_expiry(code, stale=session):
                    raise SessionExpiredError(
                        f"{endpoint} failed: session expired and re-login failed (code={code})",
                        code=code,
                        endpoint=endpoint,
                    )
                continue

            if code == RATE_LIMIT_CODE:
                rate_limited += 1
                if rate_limited >= self._config.rate_limit_retries:
                    raise RateLimitedError(
                        f"{endpoint} still rate limited after {rate_limited} attempts",
                        code=code,
                        endpoint=endpoint,
                    )
                _logger.info(
                    "%s rate limited, retrying in %.1fs (%d/%d)",
                    endpoint,
                    self._config.rate_limit_delay,
                    rate_limited,
                    self._config.rate_limit_retries,
                )
                await self._sleep(self._config.rate_limit_delay)
                continue

            raise self._error_for_code(endpoint, code, response.message, vin)

    @staticmethod
    def _error_for_code(endpoint: str, code: str, message: str, vin: str | None) -> ApiError:
        if code in ENDPOINT_NOT_SUPPORTED_CODES:
            suffix = f" for VIN {vin}" if vin else ""
            return EndpointNotSupportedError(f"{endpoint} not supported{suffix} (code={code})", code=code, endpoint=endpoint)
        if code in CONTROL_PASSWORD_ERROR_CODES:
            return ControlPasswordError(CONTROL_PASSWORD_ERROR_CODES[code], code=code, endpoint=endpoint)
        if code in REMOTE_CONTROL_SERVICE_ERROR_CODES and endpoint in REMOTE_CONTROL_ENDPOINTS:
            return RemoteControlUnavailableError(
                f"Remote control service unavailable (code={code})", code=code, endpoint=endpoint
            )
        return ApiError(f"{endpoint} failed: code={code} message={message}", code=code, endpoint=endpoint)

    # ------------------------------------------------------------------
    # Trigger / wait / poll
    # ------------------------------------------------------------------

    async def run(
        self,
        spec: OperationSpec,
        vin: str,
        *,
        extras: Mapping[str, str] | None = None,
    ) -> OperationResult | None:
        """Run *spec* for *vin* and return the first ready payload.

        Returns ``None`` only when the endpoint is unsupported for this VIN
        and the realtime cache has nothing to fall back on.

        Raises
        ------
        NoCorrelationIdError
            If the trigger returned neither a serial nor a ready payload.
        PollTimeoutError
            If polling exhausted its attempts.
        ApiError
            For any other classified server failure.
        """
        endpoints = (spec.trigger_endpoint, spec.poll_endpoint)
        if any(self.unsupported.is_unsupported(vin, endpoint) for endpoint in endpoints):
            _logger.debug("%s skipped for %s: endpoint unsupported", spec.kind, vin)
            return self._degraded(spec.kind, vin, spec.fallback_fields)

        ctx = _OperationContext()
        try:
            trigger_payload = await self._request(spec.trigger_endpoint, vin=vin, extras=extras, ctx=ctx)
        except EndpointNotSupportedError:
            self.unsupported.mark(vin, spec.trigger_endpoint)
            _logger.info("%s not supported for %s; serving cached data from now on", spec.trigger_endpoint, vin)
            return self._degraded(spec.kind, vin, spec.fallback_fields)

        serial = _extract_serial(trigger_payload)
        if spec.ready(trigger_payload):
            return self._complete(spec, vin, trigger_payload, ResultSource.TRIGGER, serial)
        if serial is None:
            raise NoCorrelationIdError(
                f"{spec.trigger_endpoint} returned no requestSerial",
                endpoint=spec.trigger_endpoint,
            )

        if spec.use_push and self._push_available():
            entry = self.correlations.register(serial, vin=vin, kind=spec.kind, timeout=self._config.push_timeout)
            pushed = await self.correlations.wait(entry)
            if pushed is not None and spec.ready(pushed):
                return self._complete(spec, vin, pushed, ResultSource.PUSH, serial)
            _logger.debug("%s for %s: no push result within %.1fs, polling", spec.kind, vin, self._config.push_timeout)

        return await self._poll(spec, vin, serial, extras, ctx)

    async def _poll(
        self,
        spec: OperationSpec,
        vin: str,
        serial: str,
        extras: Mapping[str, str] | None,
        ctx: _OperationContext,
    ) -> OperationResult:
        attempts = self._config.poll_attempts
        for attempt in range(1, attempts + 1):
            await self._sleep(self._config.poll_interval)
            try:
                payload = await self._request(
                    spec.poll_endpoint,
                    vin=vin,
                    request_serial=serial,
                    extras=extras,
                    ctx=ctx,
                )
            except EndpointNotSupportedError:
                self.unsupported.mark(vin, spec.poll_endpoint)
                raise
            except _FATAL_POLL_ERRORS:
                raise
            except (ApiError, CryptoError, EmptyPayloadError, TransportError) as exc:
                _logger.debug("%s poll %d/%d failed: %s", spec.kind, attempt, attempts, exc)
                continue

            if spec.ready(payload):
                return self._complete(spec, vin, payload, ResultSource.HTTP, serial)
            _logger.debug("%s poll %d/%d not ready", spec.kind, attempt, attempts)

        raise PollTimeoutError(
            f"{spec.kind} for {vin} not ready after {attempts} poll attempts",
            endpoint=spec.poll_endpoint,
        )

    def _complete(
        self,
        spec: OperationSpec,
        vin: str,
        payload: Any,
        source: ResultSource,
        serial: str | None,
    ) -> OperationResult:
        if spec.kind == KIND_REALTIME:
            self.ingest_realtime(vin, payload, source=source)
        return OperationResult(kind=spec.kind, vin=vin, data=payload, source=source, request_serial=serial)

    def _degraded(self, kind: str, vin: str, fields: tuple[str, ...]) -> OperationResult | None:
        data = self.realtime_cache.subset(vin, fields) if fields else {}
        if not data:
            return None
        return OperationResult(kind=kind, vin=vin, data=data, source=ResultSource.CACHE)

    def ingest_realtime(self, vin: str, payload: Any, *, source: ResultSource) -> None:
        """Store a realtime payload and hand it to the data sink."""
        if not isinstance(payload, Mapping):
            return
        self.realtime_cache.update(vin, payload)
        _logger.debug("Realtime data for %s updated from %s", vin, source.value)
        self._emit(vin, KIND_REALTIME, payload)

    def _emit(self, vin: str, kind: str, payload: Any) -> None:
        if self._on_data is None:
            return
        try:
            self._on_data(vin, kind, payload)
        except Exception:
            _logger.exception("Data sink failed for %s/%s", vin, kind)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_vehicles(self) -> list[dict[str, Any]]:
        """Vehicles bound to the account, as decoded dicts."""
        payload = await self._request(VEHICLE_LIST_ENDPOINT)
        if isinstance(payload, Mapping):
            payload = payload.get("allCarList") or []
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def fetch_realtime(self, vin: str) -> OperationResult | None:
        extras = {"energyType": "0", "tboxVersion": self._config.device.tbox_version}
        return await self.run(REALTIME_OPERATION, vin, extras=extras)

    async def fetch_gps(self, vin: str) -> OperationResult | None:
        return await self.run(GPS_OPERATION, vin)

    async def fetch_energy(self, vin: str) -> OperationResult | None:
        """Single-shot energy consumption fetch with realtime-cache fallback."""
        if self.unsupported.is_unsupported(vin, ENERGY_ENDPOINT):
            return self._degraded(KIND_ENERGY, vin, ENERGY_FALLBACK_FIELDS)
        try:
            payload = await self._request(ENERGY_ENDPOINT, vin=vin)
        except EndpointNotSupportedError:
            self.unsupported.mark(vin, ENERGY_ENDPOINT)
            _logger.info("%s not supported for %s; serving cached data from now on", ENERGY_ENDPOINT, vin)
            return self._degraded(KIND_ENERGY, vin, ENERGY_FALLBACK_FIELDS)
        return OperationResult(kind=KIND_ENERGY, vin=vin, data=payload, source=ResultSource.HTTP)

    async def fetch_broker(self) -> str:
        """MQTT broker address (``host[:port]``) for the current session."""
        payload = await self._request(BROKER_ENDPOINT)
        broker = None
        if isinstance(payload, Mapping):
            # The server spells it "emqBorker".
            broker = payload.get("emqBorker") or payload.get("emqBroker")
        if not isinstance(broker, str) or not broker.strip():
            raise ApiError("Broker lookup response missing emqBorker/emqBroker", endpoint=BROKER_ENDPOINT)
        return broker.strip()

    async def remote_control(
        self,
        vin: str,
        command: RemoteCommand | str,
        *,
        params: Mapping[str, Any] | None = None,
        command_pwd: str | None = None,
    ) -> CommandResult:
        """Send a remote command and wait for its outcome.

        Server-side failures never raise; they come back as
        ``CommandResult(success=False, error=...)``.

        Parameters
        ----------
        command_pwd : str or None
            Uppercase MD5 of the control PIN. A missing value fails the
            command before anything is sent.
        """
        command_type = command.value if isinstance(command, RemoteCommand) else str(command)
        if not command_pwd:
            error = ControlPasswordError(
                "No control PIN configured", endpoint=REMOTE_CONTROL_TRIGGER_ENDPOINT
            )
            return CommandResult.from_error(error, vin=vin, command=command_type)

        extras = {"commandType": command_type, "commandPwd": command_pwd}
        if params:
            extras["controlParamsMap"] = json.dumps(dict(params), separators=(",", ":"), sort_keys=True)

        try:
            result = await self.run(REMOTE_CONTROL_OPERATION, vin, extras=extras)
        except DilinkError as exc:
            _logger.warning("Remote command %s for %s failed: %s", command_type, vin, exc)
            return CommandResult.from_error(exc, vin=vin, command=command_type)

        if result is None:
            error = EndpointNotSupportedError(
                f"Remote control not supported for VIN {vin}", endpoint=REMOTE_CONTROL_TRIGGER_ENDPOINT
            )
            return CommandResult.from_error(error, vin=vin, command=command_type)

        outcome = CommandResult.from_payload(
            result.data if isinstance(result.data, Mapping) else {},
            vin=vin,
            command=command_type,
            request_serial=result.request_serial,
            source=result.source,
        )
        log = _logger.info if outcome.success else _logger.warning
        log("Remote command %s for %s finished: %s (via %s)", command_type, vin, outcome.outcome.name, result.source.value)
        return outcome

"""High-level async client for the vehicle cloud API."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from pydilink._crypto import CipherEnvelope, EnvelopeCodec
from pydilink._crypto.aes import is_hex
from pydilink._crypto.hashing import md5_hex
from pydilink._mqtt import MqttRuntime, fetch_mqtt_bootstrap
from pydilink._transport import SecureTransport, Transport
from pydilink.codec import ProtocolCodec
from pydilink.config import DilinkConfig
from pydilink.correlation import CorrelationTable
from pydilink.exceptions import DilinkError
from pydilink.models.control import RemoteCommand
from pydilink.models.results import CommandResult, OperationResult
from pydilink.models.vehicle import Vehicle
from pydilink.orchestrator import CommandOrchestrator, DataSink
from pydilink.push import PushRouter, PushSink
from pydilink.session import Session, SessionManager

_logger = logging.getLogger(__name__)


class DilinkClient:
    """Async client for the vehicle cloud API.

    Usage::

        async with DilinkClient(config) as client:
            await client.login()
            vehicles = await client.get_vehicles()
            result = await client.get_realtime(vehicles[0].vin)

    Parameters
    ----------
    config : DilinkConfig
        Client configuration.
    session : aiohttp.ClientSession or None
        Shared HTTP session; one is created (and closed) when omitted.
    envelope : EnvelopeCodec or None
        Outer-body cipher; defaults to :class:`CipherEnvelope` with the
        configured table file.
    transport : Transport or None
        Replacement transport, mainly for tests.
    on_data : callable or None
        ``(vin, kind, payload)`` sink for realtime payloads from HTTP or push.
    on_push_event : callable or None
        Sink for push events that no pending operation consumed.
    """

    def __init__(
        self,
        config: DilinkConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        envelope: EnvelopeCodec | None = None,
        transport: Transport | None = None,
        on_data: DataSink | None = None,
        on_push_event: PushSink | None = None,
    ) -> None:
        self._config = config
        self._http_session = session
        self._owns_http_session = session is None and transport is None
        self._envelope = envelope if envelope is not None else CipherEnvelope(config.cipher_tables_path)
        self._codec = ProtocolCodec(self._envelope)
        self._transport_override = transport
        self._on_data = on_data
        self._on_push_event = on_push_event
        self._correlations = CorrelationTable()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._sessions: SessionManager | None = None
        self._orchestrator: CommandOrchestrator | None = None
        self._router: PushRouter | None = None
        self._mqtt: MqttRuntime | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DilinkClient:
        self._loop = asyncio.get_running_loop()
        if isinstance(self._envelope, CipherEnvelope):
            await self._envelope.async_load()

        transport = self._transport_override
        if transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            transport = SecureTransport(
                self._config.base_url,
                self._codec,
                self._http_session,
                timeout=self._config.http_timeout,
            )

        sessions = SessionManager(self._config, self._codec, transport)
        orchestrator = CommandOrchestrator(
            self._config,
            self._codec,
            transport,
            sessions,
            correlations=self._correlations,
            on_data=self._on_data,
        )
        orchestrator.set_push_available(self._push_connected)
        self._router = PushRouter(
            sessions,
            self._codec,
            self._correlations,
            orchestrator,
            on_event=self._on_push_event,
            on_stale_token=self._on_stale_token,
        )
        sessions.add_listener(on_connected=self._on_connected, on_disconnected=self._on_disconnected)
        self._sessions = sessions
        self._orchestrator = orchestrator
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._push_task is not None:
            if not self._push_task.done():
                self._push_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._push_task
            self._push_task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._stop_push()
        self._correlations.cancel_all()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._sessions = None
        self._orchestrator = None
        self._router = None
        self._loop = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> SessionManager:
        if self._sessions is None:
            raise DilinkError("Client not initialized. Use 'async with DilinkClient(...) as client:'")
        return self._sessions

    @property
    def orchestrator(self) -> CommandOrchestrator:
        if self._orchestrator is None:
            raise DilinkError("Client not initialized. Use 'async with DilinkClient(...) as client:'")
        return self._orchestrator

    @property
    def router(self) -> PushRouter:
        if self._router is None:
            raise DilinkError("Client not initialized. Use 'async with DilinkClient(...) as client:'")
        return self._router

    @property
    def session(self) -> Session | None:
        return self._sessions.session if self._sessions is not None else None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self) -> Session:
        """Authenticate and start the push transport (when enabled)."""
        return await self.sessions.login()

    async def ensure_session(self) -> Session:
        return await self.sessions.ensure_session()

    def invalidate_session(self) -> None:
        """Drop the session; the next call logs in again."""
        self.sessions.invalidate()

    # ------------------------------------------------------------------
    # Push transport
    # ------------------------------------------------------------------

    def _push_connected(self) -> bool:
        return self._mqtt is not None and self._mqtt.is_connected

    def _on_connected(self, _session: Session) -> None:
        if not self._config.mqtt_enabled or self._loop is None:
            return
        self._cancel_push_startup()
        self._push_task = self._loop.create_task(self._start_push())

    def _on_disconnected(self, reason: str) -> None:
        _logger.debug("Session disconnected (%s), stopping push transport", reason)
        self._cancel_push_startup()
        if self._loop is not None and self._mqtt is not None:
            self._track(self._loop.create_task(self._stop_push()))

    def _cancel_push_startup(self) -> None:
        task, self._push_task = self._push_task, None
        if task is not None and not task.done():
            task.cancel()
            self._track(task)

    def _track(self, task: asyncio.Task[None]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _start_push(self) -> None:
        """Best-effort push startup; HTTP keeps working without it."""
        sessions = self._sessions
        loop = self._loop
        if sessions is None or loop is None or sessions.session is None:
            return
        session = sessions.session
        try:
            bootstrap = await fetch_mqtt_bootstrap(self.orchestrator, session, self._config.device)
            runtime = MqttRuntime(loop=loop, on_message=self.router.route, keepalive=self._config.mqtt_keepalive)
        except Exception:
            _logger.warning("Push transport startup failed; using HTTP polling only", exc_info=True)
            return

        # Cancelling the task does not stop start() in the executor; wait
        # for it and shut the runtime down so no network thread is left.
        start = loop.run_in_executor(None, runtime.start, bootstrap)
        try:
            await asyncio.shield(start)
        except asyncio.CancelledError:
            with contextlib.suppress(Exception):
                await start
            await self._stop_runtime(runtime)
            raise
        except Exception:
            _logger.warning("Push transport startup failed; using HTTP polling only", exc_info=True)
            return
        previous, self._mqtt = self._mqtt, runtime
        if previous is not None:
            await self._stop_runtime(previous)

    async def _stop_push(self) -> None:
        runtime, self._mqtt = self._mqtt, None
        if runtime is not None:
            await self._stop_runtime(runtime)

    async def _stop_runtime(self, runtime: MqttRuntime) -> None:
        loop = self._loop or asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, runtime.stop)
        except Exception:
            _logger.debug("Push transport stop failed", exc_info=True)

    async def _on_stale_token(self) -> None:
        sessions = self._sessions
        if sessions is None:
            return
        await sessions.handle_expiry("push-decrypt", stale=sessions.session)

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def get_vehicles(self) -> list[Vehicle]:
        """Vehicles bound to the account."""
        await self.ensure_session()
        rows = await self.orchestrator.fetch_vehicles()
        return [Vehicle.model_validate(row) for row in rows if row.get("vin")]

    async def get_realtime(self, vin: str) -> OperationResult | None:
        """Realtime telemetry via trigger, push and poll."""
        await self.ensure_session()
        return await self.orchestrator.fetch_realtime(vin)

    async def get_gps(self, vin: str) -> OperationResult | None:
        await self.ensure_session()
        return await self.orchestrator.fetch_gps(vin)

    async def get_energy(self, vin: str) -> OperationResult | None:
        await self.ensure_session()
        return await self.orchestrator.fetch_energy(vin)

    async def refresh_vehicle(self, vin: str) -> OperationResult | None:
        """Realtime refresh for polling loops.

        Failures are logged and reported as ``None`` ("no update this
        cycle") instead of raising.
        """
        try:
            return await self.get_realtime(vin)
        except DilinkError as exc:
            _logger.warning("Realtime refresh for %s failed: %s", vin, exc)
            return None

    # ------------------------------------------------------------------
    # Remote control
    # ------------------------------------------------------------------

    def _resolve_command_pwd(self, command_pwd: str | None) -> str:
        """Uppercase MD5 of the control PIN (a 32-hex value is taken as hashed)."""
        if command_pwd is not None:
            stripped = command_pwd.strip()
            if len(stripped) == 32 and is_hex(stripped):
                return stripped.upper()
            return md5_hex(stripped) if stripped else ""
        if self._config.control_pin:
            return md5_hex(self._config.control_pin)
        return ""

    async def remote_control(
        self,
        vin: str,
        command: RemoteCommand | str,
        *,
        params: Mapping[str, Any] | None = None,
        command_pwd: str | None = None,
    ) -> CommandResult:
        """Send *command* to *vin*. Never raises for server-side failures."""
        command_type = command.value if isinstance(command, RemoteCommand) else str(command)
        try:
            await self.ensure_session()
        except DilinkError as exc:
            return CommandResult.from_error(exc, vin=vin, command=command_type)
        return await self.orchestrator.remote_control(
            vin,
            command,
            params=params,
            command_pwd=self._resolve_command_pwd(command_pwd),
        )

    async def lock(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        return await self.remote_control(vin, RemoteCommand.LOCK, command_pwd=command_pwd)

    async def unlock(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        return await self.remote_control(vin, RemoteCommand.UNLOCK, command_pwd=command_pwd)

    async def flash_lights(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        return await self.remote_control(vin, RemoteCommand.FLASH_LIGHTS, command_pwd=command_pwd)

    async def find_car(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        """Horn and lights."""
        return await self.remote_control(vin, RemoteCommand.FIND_CAR, command_pwd=command_pwd)

    async def close_windows(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        return await self.remote_control(vin, RemoteCommand.CLOSE_WINDOWS, command_pwd=command_pwd)

    async def start_climate(
        self,
        vin: str,
        *,
        params: Mapping[str, Any] | None = None,
        command_pwd: str | None = None,
    ) -> CommandResult:
        """Start climate control; *params* is sent as ``controlParamsMap``."""
        return await self.remote_control(vin, RemoteCommand.START_CLIMATE, params=params, command_pwd=command_pwd)

    async def stop_climate(self, vin: str, *, command_pwd: str | None = None) -> CommandResult:
        return await self.remote_control(vin, RemoteCommand.STOP_CLIMATE, command_pwd=command_pwd)

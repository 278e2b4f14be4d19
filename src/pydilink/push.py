"""Decrypt and dispatch push messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from pydilink._constants import PUSH_EVENT_REALTIME, PUSH_EVENT_REMOTE_CONTROL
from pydilink._crypto.aes import is_hex
from pydilink._redact import redact_for_log
from pydilink.codec import ProtocolCodec
from pydilink.correlation import CorrelationTable
from pydilink.exceptions import DecryptError
from pydilink.models.control import command_outcome
from pydilink.models.push import PushMessage
from pydilink.models.results import ResultSource
from pydilink.orchestrator import KIND_REALTIME, KIND_REMOTE_CONTROL, CommandOrchestrator, is_realtime_ready
from pydilink.session import SessionManager

_logger = logging.getLogger(__name__)

PushSink = Callable[[PushMessage], None]
StaleTokenHandler = Callable[[], Awaitable[Any]]


class PushRouter:
    """Route inbound push payloads to waiting operations or the data sinks.

    Messages are uppercase-hex AES ciphertext keyed by the session content
    key. A message that does not decrypt means the key is stale; the router
    then runs *on_stale_token* once until it finishes.

    Parameters
    ----------
    sessions : SessionManager
        Source of the current content key.
    codec : ProtocolCodec
        Payload decryption.
    correlations : CorrelationTable
        The orchestrator's table.
    orchestrator : CommandOrchestrator
        Receives unsolicited realtime payloads.
    on_event : callable or None
        Sink for events no operation is waiting for.
    on_stale_token : async callable or None
        Re-authentication hook.
    """

    def __init__(
        self,
        sessions: SessionManager,
        codec: ProtocolCodec,
        correlations: CorrelationTable,
        orchestrator: CommandOrchestrator,
        *,
        on_event: PushSink | None = None,
        on_stale_token: StaleTokenHandler | None = None,
    ) -> None:
        self._sessions = sessions
        self._codec = codec
        self._correlations = correlations
        self._orchestrator = orchestrator
        self._on_event = on_event
        self._on_stale_token = on_stale_token
        self._stale_task: asyncio.Task[Any] | None = None

    def route(self, raw: bytes | str, topic: str = "") -> None:
        """Handle one push payload. Must run on the event-loop thread."""
        text = raw.decode("ascii", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
        text = "".join(text.split())
        if not is_hex(text):
            _logger.warning("Dropping non-hex push payload on %s (%d chars)", topic or "?", len(text))
            return

        session = self._sessions.session
        if session is None:
            _logger.debug("Dropping push payload: no session")
            return

        try:
            parsed = self._codec.decrypt_payload(text, session.content_key())
        except DecryptError as exc:
            _logger.warning("Dropping undecryptable push payload: %s", exc)
            self._report_stale()
            return

        if not isinstance(parsed, dict):
            _logger.warning("Dropping push payload that is not a JSON object")
            return
        try:
            message = PushMessage.model_validate({**parsed, "topic": topic})
        except ValidationError as exc:
            _logger.warning("Dropping malformed push envelope: %s", exc)
            return

        _logger.debug("Push event=%s vin=%s data=%s", message.event, message.vin, redact_for_log(message.data))
        self.dispatch(message)

    def dispatch(self, message: PushMessage) -> None:
        if message.event == PUSH_EVENT_REALTIME:
            self._handle_realtime(message)
        elif message.event == PUSH_EVENT_REMOTE_CONTROL:
            self._handle_remote_control(message)
        else:
            self._forward(message)

    def _handle_realtime(self, message: PushMessage) -> None:
        vin = message.vin
        payload = message.respond_data
        if not vin or not payload:
            _logger.debug("Ignoring vehicleInfo push without vin or data")
            return
        if is_realtime_ready(payload) and self._correlations.resolve(
            message.request_serial, vin=vin, kind=KIND_REALTIME, payload=payload
        ):
            return
        self._orchestrator.ingest_realtime(vin, payload, source=ResultSource.PUSH)

    def _handle_remote_control(self, message: PushMessage) -> None:
        payload = message.respond_data
        outcome = command_outcome(payload)
        if not outcome.is_terminal:
            _logger.debug("Ignoring pending remoteControl push for %s", message.vin)
            return
        if self._correlations.resolve(
            message.request_serial, vin=message.vin, kind=KIND_REMOTE_CONTROL, payload=payload
        ):
            return
        # Completion of a command nobody here is waiting for (e.g. sent from the app).
        self._forward(message)

    def _forward(self, message: PushMessage) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(message)
        except Exception:
            _logger.exception("Push event sink failed for event=%s", message.event)

    def _report_stale(self) -> None:
        if self._on_stale_token is None:
            return
        if self._stale_task is not None and not self._stale_task.done():
            return
        self._stale_task = asyncio.get_running_loop().create_task(self._on_stale_token())

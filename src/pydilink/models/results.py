"""Operation and command result models."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pydilink._constants import REMOTE_CONTROL_TRIGGER_ENDPOINT
from pydilink.exceptions import ApiError, DilinkError, RemoteControlFailedError
from pydilink.models.control import CommandOutcome, command_outcome


class ResultSource(enum.StrEnum):
    """Where a result payload came from."""

    PUSH = "push"
    HTTP = "http"
    CACHE = "cache"
    TRIGGER = "trigger"


class OperationResult(BaseModel):
    """Decoded payload of a data fetch.

    Parameters
    ----------
    kind : str
        Operation kind (``"realtime"``, ``"gps"``, ``"energy"``, ...).
    vin : str or None
        Vehicle the payload belongs to.
    data : Any
        Decoded ``respondData``; passed through opaquely.
    source : ResultSource
        Transport that produced the payload. ``CACHE`` marks a degraded
        result synthesised from the last realtime payload.
    request_serial : str or None
        Correlation serial of the trigger, when there was one.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    vin: str | None = None
    data: Any = None
    source: ResultSource
    request_serial: str | None = None


class CommandResult(BaseModel):
    """Structured ``{success, error}`` outcome of a remote command."""

    model_config = ConfigDict(frozen=True)

    success: bool
    outcome: CommandOutcome
    vin: str
    command: str
    error: str | None = None
    error_code: str | None = None
    request_serial: str | None = None
    source: ResultSource | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        vin: str,
        command: str,
        request_serial: str | None,
        source: ResultSource,
    ) -> CommandResult:
        outcome = command_outcome(payload)
        success = outcome is CommandOutcome.SUCCESS
        error = None
        if not success:
            message = payload.get("message") or payload.get("msg")
            error = str(message) if message else f"Command finished with outcome {outcome.name.lower()}"
        return cls(
            success=success,
            outcome=outcome,
            vin=vin,
            command=command,
            error=error,
            request_serial=request_serial,
            source=source,
            raw=dict(payload),
        )

    @classmethod
    def from_error(
        cls,
        exc: DilinkError,
        *,
        vin: str,
        command: str,
        request_serial: str | None = None,
    ) -> CommandResult:
        code = exc.code if isinstance(exc, ApiError) else None
        return cls(
            success=False,
            outcome=CommandOutcome.FAILURE,
            vin=vin,
            command=command,
            error=str(exc),
            error_code=code or None,
            request_serial=request_serial,
        )

    def raise_for_outcome(self) -> None:
        """Raise :class:`RemoteControlFailedError` unless the command succeeded."""
        if self.success:
            return
        raise RemoteControlFailedError(
            self.error or f"{self.command} failed for {self.vin}",
            code=self.error_code or "",
            endpoint=REMOTE_CONTROL_TRIGGER_ENDPOINT,
        )

"""Remote command types and completion-state parsing.

Command completion payloads come in two shapes, depending on the server
generation the vehicle is attached to:

* polled results carry ``controlState`` (0 pending, 1 success, 2 failure);
* immediate and pushed results carry ``res`` where only ``2`` means success.

Some endpoints only return a ``result`` field. All three are understood by
:func:`command_outcome`; none of them takes precedence over a present
``controlState``.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from typing import Any


class RemoteCommand(enum.StrEnum):
    """``commandType`` values accepted by ``/control/remoteControl``."""

    LOCK = "LOCKDOOR"
    UNLOCK = "OPENDOOR"
    START_CLIMATE = "OPENAIR"
    STOP_CLIMATE = "CLOSEAIR"
    FIND_CAR = "FINDCAR"
    FLASH_LIGHTS = "FLASHLIGHTNOWHISTLE"
    CLOSE_WINDOWS = "CLOSEWINDOW"
    SEAT_CLIMATE = "VENTILATIONHEATING"


class CommandOutcome(enum.IntEnum):
    """Tri-state outcome of a remote command."""

    PENDING = 0
    SUCCESS = 1
    FAILURE = 2

    @property
    def is_terminal(self) -> bool:
        return self is not CommandOutcome.PENDING


_FALSY_RESULTS = frozenset({"", "0", "false", "fail", "failed", "failure"})


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _result_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_RESULTS
    return bool(value)


def command_outcome(payload: Any) -> CommandOutcome:
    """Classify a command completion payload.

    Parameters
    ----------
    payload : Any
        Decoded ``respondData`` of a poll response or push message.

    Returns
    -------
    CommandOutcome
        ``PENDING`` for anything that is not a definitive answer.
    """
    if not isinstance(payload, Mapping) or not payload:
        return CommandOutcome.PENDING

    raw_state = payload.get("controlState")
    if raw_state is not None and raw_state != "":
        state = _as_int(raw_state)
        if state == CommandOutcome.PENDING:
            return CommandOutcome.PENDING
        # Anything past pending is final; only 1 counts as success.
        return CommandOutcome.SUCCESS if state == CommandOutcome.SUCCESS else CommandOutcome.FAILURE

    if "res" in payload:
        return CommandOutcome.SUCCESS if _as_int(payload["res"]) == 2 else CommandOutcome.FAILURE

    if "result" in payload:
        return CommandOutcome.SUCCESS if _result_truthy(payload["result"]) else CommandOutcome.FAILURE

    return CommandOutcome.PENDING


def is_command_complete(payload: Any) -> bool:
    """Whether *payload* carries a terminal command outcome."""
    return command_outcome(payload).is_terminal

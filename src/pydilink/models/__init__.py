"""Typed models for decoded cloud payloads."""

from pydilink.models.control import CommandOutcome, RemoteCommand, command_outcome, is_command_complete
from pydilink.models.push import PushMessage
from pydilink.models.results import CommandResult, OperationResult, ResultSource
from pydilink.models.token import AuthToken
from pydilink.models.vehicle import Vehicle

__all__ = [
    "AuthToken",
    "CommandOutcome",
    "CommandResult",
    "OperationResult",
    "PushMessage",
    "RemoteCommand",
    "ResultSource",
    "Vehicle",
    "command_outcome",
    "is_command_complete",
]

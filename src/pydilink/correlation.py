"""Pending trigger/push correlations keyed by request serial."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingCorrelation:
    """An operation waiting for its push result.

    ``deadline`` is in event-loop time (``loop.time()``).
    """

    request_serial: str
    vin: str
    kind: str
    deadline: float
    future: asyncio.Future[dict[str, Any]]
    created_at: float = field(default_factory=time.monotonic)

    @property
    def done(self) -> bool:
        return self.future.done()


class CorrelationTable:
    """Shared table of pending correlations.

    One table is owned by the orchestrator and handed to the push router.
    All methods run on the event-loop thread and none of the mutators
    await, so each mutation is atomic with respect to other tasks. Push
    callbacks from the MQTT network thread must hop onto the loop first.

    Insertion order doubles as age order for the ``(vin, kind)`` fallback.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PendingCorrelation] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_serial: object) -> bool:
        return request_serial in self._entries

    def __iter__(self) -> Iterator[PendingCorrelation]:
        return iter(list(self._entries.values()))

    def register(self, request_serial: str, *, vin: str, kind: str, timeout: float) -> PendingCorrelation:
        """Register a wait for *request_serial*.

        A live entry for the same serial is returned as-is so a serial never
        has two entries.
        """
        existing = self._entries.get(request_serial)
        if existing is not None and not existing.done:
            return existing

        loop = asyncio.get_running_loop()
        entry = PendingCorrelation(
            request_serial=request_serial,
            vin=vin,
            kind=kind,
            deadline=loop.time() + max(0.0, timeout),
            future=loop.create_future(),
        )
        self._entries[request_serial] = entry
        _logger.debug("Correlation registered serial=%s vin=%s kind=%s", request_serial, vin, kind)
        return entry

    def remove(self, entry: PendingCorrelation) -> None:
        """Remove *entry* if it is still the one registered for its serial."""
        if self._entries.get(entry.request_serial) is entry:
            del self._entries[entry.request_serial]

    def find(self, request_serial: str | None, *, vin: str | None, kind: str) -> PendingCorrelation | None:
        """Look up the entry a push message belongs to.

        By serial when the message has one; otherwise the oldest pending
        entry for the same VIN and kind. Never by payload content.
        """
        if request_serial:
            entry = self._entries.get(request_serial)
            if entry is not None and entry.kind == kind and not entry.done:
                return entry
            return None
        if not vin:
            return None
        for entry in self._entries.values():
            if entry.vin == vin and entry.kind == kind and not entry.done:
                return entry
        return None

    def resolve(self, request_serial: str | None, *, vin: str | None, kind: str, payload: dict[str, Any]) -> bool:
        """Complete the matching entry with *payload*.

        Returns
        -------
        bool
            Whether a waiting operation received the payload.
        """
        entry = self.find(request_serial, vin=vin, kind=kind)
        if entry is None:
            return False
        self.remove(entry)
        entry.future.set_result(payload)
        _logger.debug(
            "Correlation resolved serial=%s vin=%s kind=%s matched_by=%s",
            entry.request_serial,
            entry.vin,
            kind,
            "serial" if request_serial else "oldest",
        )
        return True

    async def wait(self, entry: PendingCorrelation) -> dict[str, Any] | None:
        """Wait for *entry* until its deadline.

        Returns ``None`` on timeout. The entry is removed either way; other
        entries are untouched.
        """
        remaining = entry.deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(asyncio.shield(entry.future), max(0.0, remaining))
        except TimeoutError:
            _logger.debug("Correlation timed out serial=%s kind=%s", entry.request_serial, entry.kind)
            return None
        finally:
            self.remove(entry)

    def cancel_all(self) -> None:
        """Cancel every pending wait (client shutdown)."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            if not entry.done:
                entry.future.cancel()

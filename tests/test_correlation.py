from __future__ import annotations

import asyncio

import pytest

from pydilink.correlation import CorrelationTable


@pytest.mark.asyncio
async def test_register_keeps_one_entry_per_serial() -> None:
    table = CorrelationTable()

    first = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)
    second = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)

    assert first is second
    assert len(table) == 1
    assert "S1" in table


@pytest.mark.asyncio
async def test_resolve_by_serial_requires_matching_kind() -> None:
    table = CorrelationTable()
    entry = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)

    assert not table.resolve("S1", vin="VIN1", kind="remote_control", payload={"res": 2})
    assert not table.resolve("S2", vin="VIN1", kind="realtime", payload={})
    assert table.resolve("S1", vin="VIN1", kind="realtime", payload={"time": 1})

    assert entry.future.result() == {"time": 1}
    assert len(table) == 0


@pytest.mark.asyncio
async def test_serialless_message_resolves_oldest_entry() -> None:
    table = CorrelationTable()
    oldest = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)
    other_vin = table.register("S2", vin="VIN2", kind="realtime", timeout=1.0)
    newest = table.register("S3", vin="VIN1", kind="realtime", timeout=1.0)

    assert table.resolve(None, vin="VIN1", kind="realtime", payload={"time": 1})

    assert oldest.done
    assert not newest.done
    assert not other_vin.done
    assert [entry.request_serial for entry in table] == ["S2", "S3"]
    assert not table.resolve(None, vin=None, kind="realtime", payload={})


@pytest.mark.asyncio
async def test_wait_timeout_removes_only_own_entry() -> None:
    table = CorrelationTable()
    short = table.register("S1", vin="VIN1", kind="realtime", timeout=0.01)
    table.register("S2", vin="VIN1", kind="realtime", timeout=5.0)

    assert await table.wait(short) is None

    assert "S1" not in table
    assert "S2" in table


@pytest.mark.asyncio
async def test_wait_returns_pushed_payload() -> None:
    table = CorrelationTable()
    entry = table.register("S1", vin="VIN1", kind="gps", timeout=1.0)

    asyncio.get_running_loop().call_soon(
        lambda: table.resolve("S1", vin="VIN1", kind="gps", payload={"latitude": 1.0})
    )

    assert await table.wait(entry) == {"latitude": 1.0}
    assert len(table) == 0


@pytest.mark.asyncio
async def test_remove_ignores_replaced_entry() -> None:
    table = CorrelationTable()
    stale = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)
    table.resolve("S1", vin="VIN1", kind="realtime", payload={})
    fresh = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)

    table.remove(stale)

    assert fresh is not stale
    assert "S1" in table


@pytest.mark.asyncio
async def test_cancel_all() -> None:
    table = CorrelationTable()
    entry = table.register("S1", vin="VIN1", kind="realtime", timeout=1.0)

    table.cancel_all()

    assert len(table) == 0
    assert entry.future.cancelled()

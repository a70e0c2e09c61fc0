"""End-to-end flows between devices sharing one workspace backend."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fakes import FakeClock


def line(item, kind: str, quantity: float, price: float) -> dict:
    return {"item_id": item.id, "type": kind, "quantity": quantity, "unit_price": price}


@pytest.mark.asyncio
async def test_job_created_offline_reaches_the_office(make_device, gateway) -> None:
    field_tablet = make_device("field", gateway)
    office = make_device("office", gateway)

    customer = field_tablet.entities.create("customer", {"name": "Harbour Cafe"})
    part = field_tablet.entities.create("part", {"name": "Mixer tap", "unit_price": 65})
    labor = field_tablet.entities.create("labor_item", {"name": "Install", "hourly_rate": 90})
    job = field_tablet.entities.create(
        "job",
        {
            "customer_id": customer.id,
            "title": "Swap kitchen tap",
            "tax_rate": 15,
            "items": [line(part, "part", 1, 65), line(labor, "labor", 1.5, 90)],
        },
    )

    assert (await field_tablet.coordinator.run_cycle()).pushed == 4
    result = await office.coordinator.run_cycle()

    assert result.applied == 4
    received = office.entities.get_by_id("job", job.id)
    assert received == job
    assert received.total == 230.0
    assert [office.entities.line_item_label(item) for item in received.items] == ["Mixer tap", "Install"]
    assert office.change_log.pending_count() == 0


@pytest.mark.asyncio
async def test_concurrent_status_edits_converge_on_the_later_write(make_device, gateway) -> None:
    a = make_device("a", gateway, clock=FakeClock())
    b = make_device("b", gateway, clock=FakeClock(datetime(2025, 3, 1, 9, 30, tzinfo=UTC)))
    customer = a.entities.create("customer", {"name": "Acme"})
    quote = a.entities.create("quote", {"customer_id": customer.id, "title": "Boiler service"})
    await a.coordinator.run_cycle()
    await b.coordinator.run_cycle()

    # Both devices edit while offline; b's edit happens later.
    a.entities.update("quote", quote.id, {"status": "sent"})
    b.entities.update("quote", quote.id, {"status": "approved"})

    await a.coordinator.run_cycle()
    b_result = await b.coordinator.run_cycle()
    a_result = await a.coordinator.run_cycle()

    assert b_result.skipped == 2
    assert a_result.applied == 1
    assert a.entities.get_by_id("quote", quote.id).status == "approved"
    assert b.entities.get_by_id("quote", quote.id).status == "approved"
    assert a.entities.get_by_id("quote", quote.id) == b.entities.get_by_id("quote", quote.id)


@pytest.mark.asyncio
async def test_remote_part_delete_leaves_item_removed_lines(make_device, gateway) -> None:
    a = make_device("a", gateway)
    b = make_device("b", gateway)
    customer = a.entities.create("customer", {"name": "Acme"})
    part = a.entities.create("part", {"name": "Discontinued valve", "unit_price": 30})
    await a.coordinator.run_cycle()
    await b.coordinator.run_cycle()

    job = b.entities.create(
        "job",
        {"customer_id": customer.id, "title": "Valve swap", "items": [line(part, "part", 2, 30)]},
    )
    a.entities.delete("part", part.id)

    await a.coordinator.run_cycle()
    await b.coordinator.run_cycle()
    await a.coordinator.run_cycle()

    for device in (a, b):
        assert device.entities.get_by_id("part", part.id) is None
        stored = device.entities.get_by_id("job", job.id)
        assert stored is not None
        assert stored.total == 60.0
        assert device.entities.line_item_label(stored.items[0]) == "item removed"

    # The job stays editable with its removed line in place.
    edited = b.entities.update("job", job.id, {"status": "completed"})
    assert edited.items[0].item_id == part.id


@pytest.mark.asyncio
async def test_new_device_catches_up_from_full_history(make_device, gateway) -> None:
    a = make_device("a", gateway)
    customer = a.entities.create("customer", {"name": "Acme"})
    a.entities.update("customer", customer.id, {"phone": "555-0101"})
    removed = a.entities.create("customer", {"name": "Gone"})
    a.entities.delete("customer", removed.id)
    await a.coordinator.run_cycle()

    late = make_device("late", gateway)
    result = await late.coordinator.run_cycle()

    assert result.pulled == 4
    assert late.entities.snapshot() == a.entities.snapshot()


@pytest.mark.asyncio
async def test_rebuild_keeps_changes_received_from_other_devices(make_device, gateway) -> None:
    clock = FakeClock()
    a = make_device("a", gateway, clock=clock)
    b = make_device("b", gateway, clock=clock)
    shared = a.entities.create("customer", {"name": "Remote"})
    temp = a.entities.create("customer", {"name": "Temp"})
    await a.coordinator.run_cycle()

    own = b.entities.create("customer", {"name": "Local"})
    await b.coordinator.run_cycle()
    b.entities.update("customer", shared.id, {"name": "Edited on b"})
    a.entities.update("customer", shared.id, {"name": "Edited on a"})
    a.entities.delete("customer", temp.id)
    await a.coordinator.run_cycle()
    await b.coordinator.run_cycle()
    before = b.entities.snapshot()

    replayed = b.entities.rebuild_from_log()

    assert replayed == 6
    assert b.entities.snapshot() == before
    assert [customer.id for customer in b.entities.list("customer")] == [shared.id, own.id]
    assert b.entities.get_by_id("customer", shared.id).name == "Edited on a"
    assert b.entities.get_by_id("customer", temp.id) is None

    assert (await b.coordinator.run_cycle()).ok
    await a.coordinator.run_cycle()
    assert b.entities.snapshot() == a.entities.snapshot()

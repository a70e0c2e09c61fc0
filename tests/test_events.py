from __future__ import annotations

from datetime import UTC, datetime

import pytest

from jobledger.models import EntityType
from jobledger.sync import ChangeEvent, MalformedRemoteEvent, Operation


def make_wire(**overrides) -> dict:
    wire = {
        "id": "evt-1",
        "workspaceId": "ws-1",
        "deviceId": "dev-b",
        "entityType": "job",
        "entityId": "job-1",
        "operation": "update",
        "payload": {"id": "job-1", "title": "Rewire", "updated_at": "2025-03-01T10:00:00Z"},
        "occurredAt": "2025-03-01T10:00:01Z",
    }
    wire.update(overrides)
    return wire


def test_event_roundtrip() -> None:
    event = ChangeEvent.new(
        workspace_id="ws-1",
        device_id="dev-a",
        entity_type=EntityType.PART,
        entity_id="p1",
        operation=Operation.CREATE,
        payload={"id": "p1", "name": "Valve"},
        occurred_at=datetime(2025, 3, 1, 9, 0, tzinfo=UTC),
    )
    decoded = ChangeEvent.from_json(event.to_json())
    assert decoded == event
    assert event.to_wire()["occurredAt"] == "2025-03-01T09:00:00Z"


def test_from_wire_accepts_entity_aliases_and_extra_keys() -> None:
    event = ChangeEvent.from_wire(make_wire(entityType="jobs", receivedAt="2025-03-01T10:00:02Z"))
    assert event.entity_type is EntityType.JOB
    assert event.operation is Operation.UPDATE


def test_record_updated_at_prefers_payload_timestamp() -> None:
    event = ChangeEvent.from_wire(make_wire())
    assert event.record_updated_at == datetime(2025, 3, 1, 10, 0, tzinfo=UTC)
    fallback = ChangeEvent.from_wire(make_wire(payload={"id": "job-1", "title": "Rewire"}))
    assert fallback.record_updated_at == datetime(2025, 3, 1, 10, 0, 1, tzinfo=UTC)


def test_delete_event_without_payload_is_valid() -> None:
    event = ChangeEvent.from_wire(make_wire(operation="delete", payload=None))
    assert event.operation is Operation.DELETE
    assert event.payload == {}


@pytest.mark.parametrize(
    "wire",
    [
        make_wire(operation="upsert"),
        make_wire(entityType="vehicle"),
        make_wire(occurredAt="yesterday"),
        make_wire(id=""),
        make_wire(payload=None),
        {"id": "evt-9"},
    ],
)
def test_from_wire_rejects_malformed_events(wire) -> None:
    with pytest.raises(MalformedRemoteEvent):
        ChangeEvent.from_wire(wire)


def test_malformed_event_keeps_event_id() -> None:
    with pytest.raises(MalformedRemoteEvent) as excinfo:
        ChangeEvent.from_wire(make_wire(operation="merge"))
    assert excinfo.value.event_id == "evt-1"


def test_from_wire_rejects_non_mapping() -> None:
    with pytest.raises(MalformedRemoteEvent, match="must be an object"):
        ChangeEvent.from_wire(["not", "an", "event"])


def test_from_json_rejects_invalid_json() -> None:
    with pytest.raises(MalformedRemoteEvent, match="not valid JSON"):
        ChangeEvent.from_json("{nope")

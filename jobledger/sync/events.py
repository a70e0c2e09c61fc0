from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import voluptuous as vol

from ..models import EntityType
from ..utils.timestamps import isoformat, parse_timestamp, utcnow


class SyncError(RuntimeError):
    """Base class for failures raised by the sync engine."""


class MalformedRemoteEvent(SyncError):
    """Raised when a pulled change event fails to parse or validate."""

    def __init__(self, message: str, *, event_id: str | None = None) -> None:
        super().__init__(message)
        self.event_id = event_id


class Operation(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _non_empty(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise vol.Invalid("must not be empty")
    return text


def _entity_type(value: Any) -> EntityType:
    try:
        return EntityType.parse(value)
    except ValueError as err:
        raise vol.Invalid(str(err)) from err


def _timestamp(value: Any) -> datetime:
    parsed = parse_timestamp(value) if isinstance(value, str | datetime) else None
    if parsed is None:
        raise vol.Invalid(f"invalid timestamp: {value!r}")
    return parsed


WIRE_EVENT_SCHEMA = vol.Schema(
    {
        vol.Required("id"): _non_empty,
        vol.Required("workspaceId"): _non_empty,
        vol.Required("deviceId"): _non_empty,
        vol.Required("entityType"): _entity_type,
        vol.Required("entityId"): _non_empty,
        vol.Required("operation"): vol.All(str, vol.Coerce(Operation)),
        vol.Optional("payload", default=None): vol.Any(None, dict),
        vol.Required("occurredAt"): _timestamp,
    },
    extra=vol.ALLOW_EXTRA,
)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """One entity mutation, the unit exchanged between devices."""

    id: str
    workspace_id: str
    device_id: str
    entity_type: EntityType
    entity_id: str
    operation: Operation
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        workspace_id: str,
        device_id: str,
        entity_type: EntityType,
        entity_id: str,
        operation: Operation,
        payload: Mapping[str, Any],
        occurred_at: datetime | None = None,
    ) -> ChangeEvent:
        return cls(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            device_id=device_id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=dict(payload),
            occurred_at=occurred_at or utcnow(),
        )

    @property
    def record_updated_at(self) -> datetime:
        """Timestamp used for last-write-wins: the record's own ``updated_at`` if present."""

        embedded = parse_timestamp(self.payload.get("updated_at")) if self.payload else None
        return embedded or self.occurred_at

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "deviceId": self.device_id,
            "entityType": self.entity_type.value,
            "entityId": self.entity_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "occurredAt": isoformat(self.occurred_at),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def from_wire(cls, payload: Any) -> ChangeEvent:
        """Validate a wire mapping and build the event.

        Raises :class:`MalformedRemoteEvent` for anything that does not match
        the change event contract.
        """

        event_id = str(payload.get("id")) if isinstance(payload, Mapping) and payload.get("id") else None
        if not isinstance(payload, Mapping):
            raise MalformedRemoteEvent(f"change event must be an object, got {type(payload).__name__}")
        try:
            data = WIRE_EVENT_SCHEMA(dict(payload))
        except vol.Invalid as err:
            raise MalformedRemoteEvent(f"invalid change event: {err}", event_id=event_id) from err
        body = data["payload"] or {}
        if data["operation"] != Operation.DELETE and not body:
            raise MalformedRemoteEvent(f"{data['operation']} event carries no payload", event_id=event_id)
        return cls(
            id=data["id"],
            workspace_id=data["workspaceId"],
            device_id=data["deviceId"],
            entity_type=data["entityType"],
            entity_id=data["entityId"],
            operation=data["operation"],
            payload=body,
            occurred_at=data["occurredAt"],
        )

    @classmethod
    def from_json(cls, line: str) -> ChangeEvent:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as err:
            raise MalformedRemoteEvent(f"change event is not valid JSON: {err}") from err
        return cls.from_wire(payload)


__all__ = [
    "ChangeEvent",
    "MalformedRemoteEvent",
    "Operation",
    "SyncError",
    "WIRE_EVENT_SCHEMA",
]

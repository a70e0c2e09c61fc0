"""In-memory, SQLite-backed store of workspace entities.

Every local mutation goes through :class:`EntityStore` and produces exactly one
:class:`~jobledger.sync.events.ChangeEvent`, written in the same transaction as
the entity row. Changes pulled from other devices are applied with
:meth:`EntityStore.apply_remote`, which never produces a change event.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from ..const import ITEM_REMOVED_LABEL
from ..models import (
    CATALOG_TYPES,
    DOCUMENT_TYPES,
    EntityType,
    LineItem,
    LineItemDocument,
    Record,
    normalise_keys,
    record_from_dict,
)
from ..utils.timestamps import isoformat, parse_timestamp, utcnow
from .change_log import ChangeLog
from .conflict import ConflictResolver
from .events import ChangeEvent, MalformedRemoteEvent, Operation

_LOGGER = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "created_at", "updated_at"}
_EPOCH = datetime.min.replace(tzinfo=UTC)


class ReferentialIntegrityError(ValueError):
    """Raised when a local mutation would break line-item references."""

    def __init__(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        blocking: Mapping[EntityType, int] | None = None,
        missing: Iterable[tuple[EntityType, str]] = (),
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.blocking = {key: count for key, count in (blocking or {}).items() if count}
        self.missing = list(missing)
        if self.blocking:
            counts = ", ".join(f"{count} {kind}(s)" for kind, count in self.blocking.items())
            message = f"cannot delete {entity_type} {entity_id}: referenced by {counts}"
        else:
            refs = ", ".join(f"{kind} {ref}" for kind, ref in self.missing)
            message = f"{entity_type} {entity_id} references missing {refs}"
        super().__init__(message)

    @property
    def blocking_count(self) -> int:
        return sum(self.blocking.values())


class EntityNotFoundError(KeyError):
    """Raised when a local update or delete targets an unknown record."""

    def __init__(self, entity_type: EntityType, entity_id: str) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id

    def __str__(self) -> str:
        return str(self.args[0])


class EntityStore:
    """Single source of truth for entity reads within one workspace."""

    def __init__(
        self,
        change_log: ChangeLog,
        *,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.change_log = change_log
        self.store = change_log.store
        self.workspace_id = change_log.workspace_id
        self.device_id = change_log.device_id
        self._clock = clock
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._records: dict[EntityType, dict[str, Record]] = {kind: {} for kind in EntityType}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        """Re-read every record of the workspace from disk."""

        records: dict[EntityType, dict[str, Record]] = {kind: {} for kind in EntityType}
        for entity_type, payload in self.store.load_entities(self.workspace_id):
            record = record_from_dict(entity_type, payload)
            records[record.entity_type][record.id] = record
        self._records = records

    def get_by_id(self, entity_type: EntityType | str, entity_id: str) -> Record | None:
        record = self._records[EntityType.parse(entity_type)].get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    def list(self, entity_type: EntityType | str) -> list[Record]:
        records = self._records[EntityType.parse(entity_type)].values()
        return [copy.deepcopy(record) for record in sorted(records, key=_creation_order)]

    def count(self, entity_type: EntityType | str | None = None) -> int:
        if entity_type is None:
            return sum(len(items) for items in self._records.values())
        return len(self._records[EntityType.parse(entity_type)])

    def snapshot(self) -> dict[str, dict[str, dict[str, Any]]]:
        return {
            kind.value: {record_id: record.to_dict() for record_id, record in sorted(items.items())}
            for kind, items in self._records.items()
        }

    # ------------------------------------------------------------------
    def create(self, entity_type: EntityType | str, fields: Mapping[str, Any]) -> Record:
        kind = EntityType.parse(entity_type)
        data = normalise_keys(fields)
        record_id = str(data.get("id") or "").strip() or self._id_factory()
        if record_id in self._records[kind]:
            raise ValueError(f"{kind} {record_id} already exists")
        now = self._clock()
        data.update(id=record_id, created_at=isoformat(now), updated_at=isoformat(now))
        record = record_from_dict(kind, data)
        self._prepare(record)
        self._commit(record, Operation.CREATE, now)
        return copy.deepcopy(record)

    def update(self, entity_type: EntityType | str, entity_id: str, patch: Mapping[str, Any]) -> Record:
        kind = EntityType.parse(entity_type)
        current = self._require(kind, entity_id)
        merged = current.to_dict()
        merged.update({key: value for key, value in normalise_keys(patch).items() if key not in _IMMUTABLE_FIELDS})
        now = self._clock()
        merged["updated_at"] = isoformat(now)
        record = record_from_dict(kind, merged)
        self._prepare(record, current)
        self._commit(record, Operation.UPDATE, now)
        return copy.deepcopy(record)

    def delete(self, entity_type: EntityType | str, entity_id: str) -> None:
        kind = EntityType.parse(entity_type)
        self._require(kind, entity_id)
        if kind in CATALOG_TYPES:
            blocking = self.references_to(kind, entity_id)
            if any(blocking.values()):
                raise ReferentialIntegrityError(kind, entity_id, blocking=blocking)
        now = self._clock()
        event = self._event(kind, entity_id, Operation.DELETE, {"id": entity_id}, now)
        self.change_log.append_mutation(event, None)
        del self._records[kind][entity_id]

    # ------------------------------------------------------------------
    def references_to(self, entity_type: EntityType, entity_id: str) -> dict[EntityType, int]:
        """Count the jobs, quotes and invoices whose line items point at ``entity_id``."""

        counts: dict[EntityType, int] = {}
        for kind in DOCUMENT_TYPES:
            counts[kind] = sum(
                1
                for document in self._records[kind].values()
                if isinstance(document, LineItemDocument) and document.references(entity_type, entity_id)
            )
        return counts

    def resolve_line_item(self, item: LineItem) -> Record | None:
        return self.get_by_id(item.target_type, item.item_id)

    def line_item_label(self, item: LineItem) -> str:
        target = self._records[item.target_type].get(item.item_id)
        if target is None:
            return ITEM_REMOVED_LABEL
        return target.display_name

    # ------------------------------------------------------------------
    def apply_remote(self, event: ChangeEvent, resolver: ConflictResolver) -> bool:
        """Apply a change pulled from another device.

        Returns ``True`` when local state changed. Deletes are never rejected;
        line items that pointed at the removed record are left dangling.
        """

        kind = event.entity_type
        if event.operation == Operation.DELETE:
            if event.entity_id not in self._records[kind]:
                return False
            self.store.commit_mutation(self.workspace_id, kind.value, event.entity_id, None)
            del self._records[kind][event.entity_id]
            if kind in CATALOG_TYPES:
                dangling = sum(self.references_to(kind, event.entity_id).values())
                if dangling:
                    _LOGGER.info(
                        "Remote delete of %s %s left %d document(s) with removed line items",
                        kind,
                        event.entity_id,
                        dangling,
                    )
            return True

        try:
            incoming = record_from_dict(kind, event.payload)
        except (TypeError, ValueError, ArithmeticError) as err:
            raise MalformedRemoteEvent(f"invalid {kind} payload: {err}", event_id=event.id) from err
        if incoming.id != event.entity_id:
            raise MalformedRemoteEvent(
                f"payload id {incoming.id} does not match entity id {event.entity_id}",
                event_id=event.id,
            )
        current = self._records[kind].get(event.entity_id)
        if not resolver.should_apply(current, event):
            _LOGGER.debug("Keeping local %s %s; remote change %s is older", kind, event.entity_id, event.id)
            return False
        if not incoming.updated_at:
            incoming.updated_at = isoformat(event.occurred_at)
        if not incoming.created_at:
            incoming.created_at = current.created_at if current else incoming.updated_at
        self.store.commit_mutation(self.workspace_id, kind.value, incoming.id, incoming.to_dict())
        self._records[kind][incoming.id] = incoming
        return True

    # ------------------------------------------------------------------
    def rebuild_from_log(self, resolver: ConflictResolver | None = None) -> int:
        """Discard current state and replay the workspace change log from empty.

        Remote changes this device had received are re-applied at the point
        they originally arrived, through :meth:`apply_remote` and ``resolver``.
        Returns the number of events replayed.
        """

        resolver = resolver or ConflictResolver()
        events = self.change_log.events()
        incoming = deque(self.store.list_incoming(self.workspace_id))
        self.store.clear_entities(self.workspace_id)
        self._records = {kind: {} for kind in EntityType}
        remote = 0
        for position, event in enumerate(events):
            while incoming and incoming[0][0] <= position:
                remote += self._reapply(incoming.popleft()[1], resolver)
            self._replay(event)
        while incoming:
            remote += self._reapply(incoming.popleft()[1], resolver)
        _LOGGER.info(
            "Rebuilt workspace %s from %d change event(s) and %d remote event(s)",
            self.workspace_id,
            len(events),
            remote,
        )
        return len(events) + remote

    def _replay(self, event: ChangeEvent) -> None:
        kind = event.entity_type
        if event.operation == Operation.DELETE:
            self._records[kind].pop(event.entity_id, None)
            self.store.commit_mutation(self.workspace_id, kind.value, event.entity_id, None)
            return
        record = record_from_dict(kind, event.payload)
        self._records[kind][record.id] = record
        self.store.commit_mutation(self.workspace_id, kind.value, record.id, record.to_dict())

    def _reapply(self, event: ChangeEvent, resolver: ConflictResolver) -> int:
        try:
            self.apply_remote(event, resolver)
        except MalformedRemoteEvent as err:
            _LOGGER.warning("Skipping stored remote change %s during rebuild: %s", event.id, err)
            return 0
        return 1

    # ------------------------------------------------------------------
    def _require(self, kind: EntityType, entity_id: str) -> Record:
        record = self._records[kind].get(entity_id)
        if record is None:
            raise EntityNotFoundError(kind, entity_id)
        return record

    def _prepare(self, record: Record, current: Record | None = None) -> None:
        record.validate()
        if not isinstance(record, LineItemDocument):
            return
        # Lines left dangling by a remote delete may stay; new ones must resolve.
        existing: set[tuple[EntityType, str]] = set()
        if isinstance(current, LineItemDocument):
            existing = {(line.target_type, line.item_id) for line in current.items}
        missing = [
            (line.target_type, line.item_id)
            for line in record.items
            if line.item_id not in self._records[line.target_type]
            and (line.target_type, line.item_id) not in existing
        ]
        if missing:
            raise ReferentialIntegrityError(record.entity_type, record.id, missing=missing)
        record.recalculate_totals()

    def _commit(self, record: Record, operation: Operation, now: datetime) -> None:
        payload = record.to_dict()
        event = self._event(record.entity_type, record.id, operation, payload, now)
        self.change_log.append_mutation(event, payload)
        self._records[record.entity_type][record.id] = record

    def _event(
        self,
        kind: EntityType,
        entity_id: str,
        operation: Operation,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> ChangeEvent:
        return ChangeEvent.new(
            workspace_id=self.workspace_id,
            device_id=self.device_id,
            entity_type=kind,
            entity_id=entity_id,
            operation=operation,
            payload=payload,
            occurred_at=now,
        )


def _creation_order(record: Record) -> tuple[datetime, str]:
    return parse_timestamp(record.created_at) or _EPOCH, record.id


__all__ = ["EntityNotFoundError", "EntityStore", "ReferentialIntegrityError"]

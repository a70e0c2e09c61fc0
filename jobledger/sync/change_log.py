from __future__ import annotations

from collections.abc import Iterable

from .events import ChangeEvent
from .local_store import LocalSyncStore


class ChangeLog:
    """Append-only, device-scoped ledger of local change events.

    Events are ordered by the local sequence number assigned on append, never
    by wall-clock time. Nothing is removed except through :meth:`prune`.
    """

    def __init__(self, store: LocalSyncStore, workspace_id: str, device_id: str) -> None:
        self.store = store
        self.workspace_id = workspace_id
        self.device_id = device_id

    def append(self, event: ChangeEvent) -> int:
        self._check_scope(event)
        return self.store.append_change(event)

    def append_mutation(self, event: ChangeEvent, record: dict | None) -> int:
        """Append ``event`` and persist the resulting entity row in one transaction.

        ``record`` is ``None`` for deletes.
        """

        self._check_scope(event)
        seq = self.store.commit_mutation(
            self.workspace_id,
            event.entity_type.value,
            event.entity_id,
            record,
            event,
        )
        return int(seq or 0)

    def unpushed(self, limit: int | None = None) -> list[ChangeEvent]:
        return self.store.list_changes(
            self.workspace_id,
            device_id=self.device_id,
            pushed=False,
            limit=limit,
        )

    def mark_pushed(self, event_ids: Iterable[str]) -> int:
        return self.store.mark_changes_pushed(event_ids)

    def mark_attempt(self, event_ids: Iterable[str]) -> None:
        self.store.mark_change_attempt(event_ids)

    def events(self) -> list[ChangeEvent]:
        """Full history for the workspace in sequence order."""

        return self.store.list_changes(self.workspace_id)

    def pending_count(self) -> int:
        return self.store.count_changes(self.workspace_id, device_id=self.device_id, pushed=False)

    def __len__(self) -> int:
        return self.store.count_changes(self.workspace_id)

    def prune(self) -> None:
        self.store.prune_changes(self.workspace_id)

    def _check_scope(self, event: ChangeEvent) -> None:
        if event.workspace_id != self.workspace_id or event.device_id != self.device_id:
            raise ValueError(
                f"event {event.id} belongs to {event.workspace_id}/{event.device_id}, "
                f"not {self.workspace_id}/{self.device_id}"
            )

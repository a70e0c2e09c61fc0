"""Push/pull/reconcile cycles and the scheduler that drives them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..const import DEFAULT_SYNC_INTERVAL
from ..utils.logging import reset_warnings, warn_once
from ..utils.timestamps import isoformat, utcnow
from .change_log import ChangeLog
from .conflict import ConflictResolver
from .entity_store import EntityStore
from .events import ChangeEvent, MalformedRemoteEvent, SyncError
from .gateway import AuthenticationInvalid, RemoteGateway, RemoteUnavailable
from .identity import IdentityManager

_LOGGER = logging.getLogger(__name__)

PULL_CURSOR_PREFIX = "pull:"


class SyncState(StrEnum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    FAILED = "failed"


@dataclass(slots=True)
class CycleResult:
    """Outcome of one :meth:`SyncCoordinator.run_cycle` call."""

    trigger: str
    ran: bool = True
    skipped_reason: str | None = None
    pushed: int = 0
    pulled: int = 0
    applied: int = 0
    skipped: int = 0
    malformed: int = 0
    error: str | None = None
    server_time: str | None = None

    @property
    def ok(self) -> bool:
        return self.ran and self.error is None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncCoordinator:
    """Runs sync cycles for one workspace on this device.

    Only one cycle runs at a time; a trigger that arrives while a cycle is in
    flight is dropped rather than queued. Errors are recorded on the
    coordinator and never raised to the caller.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        change_log: ChangeLog,
        gateway: RemoteGateway,
        identity: IdentityManager,
        *,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.entity_store = entity_store
        self.change_log = change_log
        self.gateway = gateway
        self.identity = identity
        self.resolver = resolver or ConflictResolver()
        self.store = change_log.store
        self.workspace_id = change_log.workspace_id
        self.device_id = change_log.device_id
        self._clock = clock
        self._lock = asyncio.Lock()
        self.state = SyncState.IDLE
        self.last_error: str | None = None
        self.last_success_at: datetime | None = None
        self.last_result: CycleResult | None = None

    @property
    def cursor_stream(self) -> str:
        return f"{PULL_CURSOR_PREFIX}{self.workspace_id}"

    @property
    def checkpoint(self) -> str | None:
        return self.store.get_cursor(self.cursor_stream)

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    async def run_cycle(self, trigger: str = "manual", *, full: bool = False) -> CycleResult:
        """Run one push/pull/reconcile cycle.

        ``full`` pulls the workspace history from the beginning instead of from
        the checkpoint; events already applied are still skipped.
        """

        context = self.identity.current
        if context is None or not context.can_sync or context.workspace_id != self.workspace_id:
            _LOGGER.debug("Sync skipped (%s): no session for workspace %s", trigger, self.workspace_id)
            return CycleResult(trigger, ran=False, skipped_reason="no_session")
        # Checked and acquired without an await in between.
        if self._lock.locked():
            _LOGGER.debug("Sync skipped (%s): cycle already in flight", trigger)
            return CycleResult(trigger, ran=False, skipped_reason="in_flight")
        async with self._lock:
            result = await self._run_locked(trigger, full)
        self.last_result = result
        return result

    async def _run_locked(self, trigger: str, full: bool) -> CycleResult:
        result = CycleResult(trigger)
        try:
            self._set_state(SyncState.PUSHING)
            try:
                result.pushed = await self._push()
            except RemoteUnavailable as err:
                # Pull still runs; the events stay unpushed for the next cycle.
                self._record_failure(result, "push_failed", err)

            self._set_state(SyncState.PULLING)
            since = None if full else self.checkpoint
            pulled = await self.gateway.pull(self.workspace_id, since)
            result.pulled = len(pulled.changes)

            self._set_state(SyncState.RECONCILING)
            self._reconcile(pulled.changes, result)
            self.store.set_cursor(self.cursor_stream, pulled.server_time)
            result.server_time = pulled.server_time
        except AuthenticationInvalid as err:
            self._record_failure(result, "auth_invalid", err)
            self.identity.invalidate(str(err))
        except RemoteUnavailable as err:
            self._record_failure(result, "pull_failed", err)
        except SyncError as err:
            self._record_failure(result, "sync_failed", err)
        except Exception as err:  # pragma: no cover - defensive log
            _LOGGER.exception("Unexpected sync error: %s", err)
            self._record_failure(result, "unexpected", err)
        finally:
            self._set_state(SyncState.IDLE)

        if result.error is None:
            self.last_error = None
            self.last_success_at = self._clock()
            reset_warnings()
            _LOGGER.debug(
                "Sync cycle (%s) pushed=%d pulled=%d applied=%d skipped=%d",
                trigger,
                result.pushed,
                result.pulled,
                result.applied,
                result.skipped,
            )
        return result

    async def _push(self) -> int:
        events = self.change_log.unpushed()
        if not events:
            return 0
        ids = [event.id for event in events]
        try:
            ack = await self.gateway.push(self.workspace_id, self.device_id, events)
        except SyncError:
            self.change_log.mark_attempt(ids)
            raise
        acked = set(ack.acked)
        done = [event_id for event_id in ids if event_id in acked]
        missing = [event_id for event_id in ids if event_id not in acked]
        if missing:
            self.change_log.mark_attempt(missing)
        return self.change_log.mark_pushed(done)

    def _reconcile(self, changes: Sequence[Any], result: CycleResult) -> None:
        for raw in changes:
            try:
                event = ChangeEvent.from_wire(raw)
            except MalformedRemoteEvent as err:
                self._skip_malformed(result, err)
                continue
            if event.workspace_id != self.workspace_id or event.device_id == self.device_id:
                result.skipped += 1
                continue
            if self.store.has_incoming(event.id):
                result.skipped += 1
                continue
            try:
                applied = self.entity_store.apply_remote(event, self.resolver)
            except MalformedRemoteEvent as err:
                self._skip_malformed(result, err)
                continue
            self.store.record_incoming(event)
            if applied:
                result.applied += 1
            else:
                result.skipped += 1

    def _skip_malformed(self, result: CycleResult, err: MalformedRemoteEvent) -> None:
        result.malformed += 1
        warn_once(_LOGGER, "malformed_remote_event", f"skipping change {err.event_id or '?'}: {err}")

    def _record_failure(self, result: CycleResult, code: str, err: BaseException) -> None:
        self._set_state(SyncState.FAILED)
        message = str(err) or type(err).__name__
        if result.error is None:
            result.error = message
        self.last_error = message
        warn_once(_LOGGER, code, message)

    def _set_state(self, state: SyncState) -> None:
        if state != self.state:
            _LOGGER.debug("Sync state %s -> %s", self.state, state)
        self.state = state

    # ------------------------------------------------------------------
    def status(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "device_id": self.device_id,
            "state": self.state.value,
            "in_flight": self.in_flight,
            "local_only": bool(getattr(self.gateway, "local_only", False)),
            "last_error": self.last_error,
            "last_success_at": isoformat(self.last_success_at) if self.last_success_at else None,
            "last_result": self.last_result.as_dict() if self.last_result else None,
            "pending": self.change_log.pending_count(),
            "checkpoint": self.checkpoint,
        }


class SyncScheduler:
    """Fires sync cycles on a fixed interval and on foreground notifications."""

    def __init__(self, coordinator: SyncCoordinator, *, interval: float = DEFAULT_SYNC_INTERVAL) -> None:
        self.coordinator = coordinator
        self.interval = interval
        self._timer: asyncio.Task | None = None
        self._cycles: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def async_start(self, *, run_immediately: bool = True) -> None:
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(self._run_timer())
        if run_immediately:
            self.trigger("startup")

    async def async_stop(self) -> None:
        """Stop the timer and wait for any in-flight cycle to finish."""

        if self._timer:
            self._timer.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer
        self._timer = None
        if self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)

    def trigger(self, reason: str = "manual") -> asyncio.Task | None:
        if self.coordinator.in_flight:
            _LOGGER.debug("Dropping %s trigger; cycle already in flight", reason)
            return None
        task = asyncio.get_running_loop().create_task(self.coordinator.run_cycle(reason))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    def notify_foreground(self) -> asyncio.Task | None:
        return self.trigger("foreground")

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.trigger("interval")


__all__ = ["PULL_CURSOR_PREFIX", "CycleResult", "SyncCoordinator", "SyncScheduler", "SyncState"]

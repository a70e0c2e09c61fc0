"""Process-wide wiring of the sync engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aiohttp import ClientSession

from ..const import LOCAL_WORKSPACE_ID, ROLE_MEMBER, ROLE_OWNER
from .change_log import ChangeLog
from .config import SyncConfig
from .conflict import ConflictResolver
from .coordinator import PULL_CURSOR_PREFIX, CycleResult, SyncCoordinator, SyncScheduler
from .entity_store import EntityStore
from .gateway import RemoteGateway, create_gateway
from .identity import (
    IdentityContext,
    IdentityError,
    IdentityManager,
    Membership,
    WorkspaceClient,
    WorkspaceInfo,
)
from .local_store import LocalSyncStore

_LOGGER = logging.getLogger(__name__)

_CONFIG_KEY = "sync_config"


@dataclass(slots=True)
class WorkspaceServices:
    """Everything bound to one workspace on this device."""

    workspace_id: str
    change_log: ChangeLog
    entities: EntityStore
    coordinator: SyncCoordinator
    scheduler: SyncScheduler


class SyncManager:
    """Owns the local store, identity and the active workspace's services.

    Lifecycle: ``async_start`` opens the services for the current workspace
    (the local scratch workspace while onboarding) and starts the scheduler
    when the identity allows syncing. Identity changes tear the services down
    and rebuild them for the new workspace. ``async_stop`` waits for any
    in-flight cycle and releases the HTTP session.
    """

    def __init__(
        self,
        store_path: str | Path,
        *,
        config: SyncConfig | None = None,
        resolver: ConflictResolver | None = None,
        session: ClientSession | None = None,
    ) -> None:
        self.store_path = store_path
        self.store = LocalSyncStore(store_path)
        self.identity = IdentityManager(self.store)
        if config is None:
            config = SyncConfig.from_options(self.store.get_value(_CONFIG_KEY, {}))
        else:
            self.store.set_value(_CONFIG_KEY, config.to_options())
        self.config = config
        self.resolver = resolver or ConflictResolver()
        self._session = session
        self.gateway: RemoteGateway | None = None
        self.workspaces = WorkspaceClient(config, session=session)
        self.services: WorkspaceServices | None = None
        self._started = False
        self._schedule = True
        self._unsubscribe = None
        self._transitions: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    @property
    def entities(self) -> EntityStore:
        if self.services is None:
            self.services = self._open_workspace(self._active_workspace_id())
        return self.services.entities

    async def async_start(self, *, schedule: bool = True) -> None:
        """Open the active workspace; ``schedule=False`` leaves cycles to :meth:`async_sync_now`."""

        if self._started:
            return
        self._started = True
        self._schedule = schedule
        if self.gateway is None:
            self.gateway = create_gateway(self.config, session=self._session)
        self._unsubscribe = self.identity.register_listener(self._identity_changed)
        await self._async_activate(self._active_workspace_id())

    async def async_stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._transitions:
            await asyncio.gather(*list(self._transitions), return_exceptions=True)
        if self.services is not None:
            await self.services.scheduler.async_stop()
            self.services = None
        if self.gateway is not None:
            await self.gateway.async_close()
            self.gateway = None
        await self.workspaces.async_close()
        self._started = False

    async def async_update_config(self, config: SyncConfig) -> None:
        """Persist new backend settings and restart with a fresh gateway.

        Moving to a different backend re-queues this device's events and drops
        the pull checkpoints, so the new backend receives everything recorded
        so far and is pulled from the beginning.
        """

        was_started = self._started
        await self.async_stop()
        previous = self.config.base_url if self.config.configured else None
        if config.configured and config.base_url != previous:
            requeued = self.store.requeue_changes(self.identity.device_id)
            cleared = self.store.clear_cursors(PULL_CURSOR_PREFIX)
            _LOGGER.info(
                "Backend changed to %s; re-queued %d change(s) and cleared %d checkpoint(s)",
                config.base_url,
                requeued,
                cleared,
            )
        self.store.set_value(_CONFIG_KEY, config.to_options())
        self.config = config
        self.workspaces = WorkspaceClient(config, session=self._session)
        self.services = None
        if was_started:
            await self.async_start(schedule=self._schedule)

    # ------------------------------------------------------------------
    async def async_sync_now(self, *, full: bool = False) -> CycleResult:
        """Run a cycle now; ``full`` re-pulls the workspace history from the start."""

        trigger = "full" if full else "manual"
        if self.services is None or not self._started:
            return CycleResult(trigger, ran=False, skipped_reason="not_started")
        return await self.services.coordinator.run_cycle(trigger, full=full)

    def notify_foreground(self) -> None:
        if self.services is not None and self._started:
            self.services.scheduler.notify_foreground()

    async def async_sign_in(
        self,
        user_id: str,
        *,
        email: str | None = None,
        workspace_id: str | None = None,
        role: str = ROLE_MEMBER,
    ) -> IdentityContext:
        context = self.identity.sign_in(user_id, email=email, workspace_id=workspace_id, role=role)
        await self.async_block_till_done()
        return context

    async def async_sign_out(self) -> None:
        self.identity.sign_out()
        await self.async_block_till_done()

    async def async_create_workspace(self, name: str) -> WorkspaceInfo:
        context = self._require_context()
        info = await self.workspaces.create_workspace(name, context.email)
        self.identity.link_workspace(info.workspace_id, role=ROLE_OWNER)
        await self.async_block_till_done()
        return info

    async def async_join_workspace(self, email: str, invite_code: str) -> Membership:
        self._require_context()
        membership = await self.workspaces.accept_invite(email, invite_code, self.identity.device_id)
        self.identity.link_workspace(membership.workspace_id, role=membership.role)
        await self.async_block_till_done()
        return membership

    async def async_reset_local_data(self) -> None:
        """Erase the active workspace's entities, change log, inbox and checkpoint."""

        services = self.services or self._open_workspace(self._active_workspace_id())
        await services.scheduler.async_stop()
        self.store.reset_workspace(services.workspace_id, cursor_stream=services.coordinator.cursor_stream)
        services.entities.reload()
        _LOGGER.info("Reset local data for workspace %s", services.workspace_id)
        self.services = services
        if self._started and self._schedule and self.identity.can_sync:
            await services.scheduler.async_start()

    def status(self) -> dict[str, Any]:
        context = self.identity.current
        status: dict[str, Any] = {
            "store_path": str(self.store_path),
            "configured": self.config.configured,
            "local_only": not self.config.configured,
            "signed_in": context is not None,
            "user_id": context.user_id if context else None,
            "workspace_id": context.workspace_id if context else None,
            "role": context.role if context else None,
            "device_id": self.identity.device_id,
            "last_invalidation": self.identity.last_invalidation,
            "scheduler_running": bool(self.services and self.services.scheduler.running),
        }
        status["sync"] = self.services.coordinator.status() if self.services else None
        return status

    # ------------------------------------------------------------------
    def _active_workspace_id(self) -> str:
        context = self.identity.current
        if context is not None and context.workspace_id:
            return context.workspace_id
        return LOCAL_WORKSPACE_ID

    def _require_context(self) -> IdentityContext:
        context = self.identity.current
        if context is None:
            raise IdentityError("sign in first")
        return context

    def _open_workspace(self, workspace_id: str) -> WorkspaceServices:
        change_log = ChangeLog(self.store, workspace_id, self.identity.device_id)
        entities = EntityStore(change_log)
        gateway = self.gateway or create_gateway(self.config, session=self._session)
        self.gateway = gateway
        coordinator = SyncCoordinator(entities, change_log, gateway, self.identity, resolver=self.resolver)
        scheduler = SyncScheduler(coordinator, interval=self.config.interval)
        return WorkspaceServices(workspace_id, change_log, entities, coordinator, scheduler)

    async def _async_activate(self, workspace_id: str) -> None:
        if self.services is not None and self.services.workspace_id != workspace_id:
            await self.services.scheduler.async_stop()
            self.services = None
        if self.services is None:
            self.services = self._open_workspace(workspace_id)
        scheduler = self.services.scheduler
        if self.identity.can_sync and self._schedule and not scheduler.running:
            _LOGGER.info("Starting sync for workspace %s", workspace_id)
            await scheduler.async_start()
        elif scheduler.running and not (self.identity.can_sync and self._schedule):
            _LOGGER.info("Stopping sync for workspace %s", workspace_id)
            await scheduler.async_stop()

    def _identity_changed(self, context: IdentityContext | None) -> None:
        if not self._started:
            return
        task = asyncio.get_running_loop().create_task(self._async_activate(self._active_workspace_id()))
        self._transitions.add(task)
        task.add_done_callback(self._transitions.discard)

    async def async_block_till_done(self) -> None:
        """Wait until pending identity transitions have been applied."""

        if self._transitions:
            await asyncio.gather(*list(self._transitions), return_exceptions=True)


__all__ = ["SyncManager", "WorkspaceServices"]

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeClock, InProcessGateway

from cloud.api.main import SyncServerState
from jobledger.sync import (
    ChangeLog,
    ConflictResolver,
    EntityStore,
    IdentityManager,
    LocalSyncStore,
    SyncCoordinator,
)
from jobledger.utils.logging import reset_warnings


@dataclass
class Device:
    store: LocalSyncStore
    identity: IdentityManager
    change_log: ChangeLog
    entities: EntityStore
    coordinator: SyncCoordinator

    @property
    def device_id(self) -> str:
        return self.identity.device_id


@pytest.fixture(autouse=True)
def _reset_rate_limited_warnings():
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> LocalSyncStore:
    return LocalSyncStore(tmp_path / "sync.db")


@pytest.fixture
def change_log(store: LocalSyncStore) -> ChangeLog:
    return ChangeLog(store, "ws-1", "dev-a")


@pytest.fixture
def entities(change_log: ChangeLog, clock: FakeClock) -> EntityStore:
    return EntityStore(change_log, clock=clock)


@pytest.fixture
def server() -> SyncServerState:
    return SyncServerState()


@pytest.fixture
def gateway(server: SyncServerState) -> InProcessGateway:
    return InProcessGateway(server)


@pytest.fixture
def make_device(tmp_path: Path) -> Callable[..., Device]:
    def _make(
        name: str,
        gateway: Any,
        *,
        workspace_id: str = "ws-1",
        user_id: str = "user-1",
        clock: Callable[[], datetime] | None = None,
        resolver: ConflictResolver | None = None,
    ) -> Device:
        store = LocalSyncStore(tmp_path / f"{name}.db")
        identity = IdentityManager(store)
        identity.sign_in(user_id, workspace_id=workspace_id)
        change_log = ChangeLog(store, workspace_id, identity.device_id)
        kwargs = {"clock": clock} if clock is not None else {}
        entity_store = EntityStore(change_log, **kwargs)
        coordinator = SyncCoordinator(entity_store, change_log, gateway, identity, resolver=resolver)
        return Device(store, identity, change_log, entity_store, coordinator)

    return _make


@pytest.fixture
def catalog(entities: EntityStore) -> dict[str, Any]:
    """A customer, a part and a labor item ready to be referenced by documents."""

    customer = entities.create("customer", {"name": "Acme Plumbing", "email": "ops@acme.test"})
    part = entities.create("part", {"name": "Copper elbow", "unit_price": 4.5, "stock": 40, "sku": "CE-12"})
    labor = entities.create("labor_item", {"name": "Call-out", "hourly_rate": 80})
    return {"customer": customer, "part": part, "labor": labor}

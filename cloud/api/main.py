from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query

from jobledger.const import ENV_SYNC_API_KEY, ROLE_MEMBER, ROLE_OWNER
from jobledger.sync.events import ChangeEvent, MalformedRemoteEvent
from jobledger.sync.identity import generate_invite_code
from jobledger.utils.timestamps import isoformat, parse_timestamp, utcnow

from .auth import Principal, normalise_api_keys, principal_dependency

ENV_API_KEYS = "JOBLEDGER_API_KEYS"

_TICK = timedelta(microseconds=1)


@dataclass
class StoredChange:
    event: dict[str, Any]
    workspace_id: str
    received_at: datetime


@dataclass
class WorkspaceRecord:
    workspace_id: str
    name: str
    invite_code: str
    created_at: str


@dataclass
class MemberRecord:
    email: str
    role: str
    created_at: str
    device_ids: set[str] = field(default_factory=set)


@dataclass
class InviteRecord:
    workspace_id: str
    email: str | None
    used: bool = False


class SyncServerState:
    """In-memory reference implementation of the workspace sync backend.

    Every change is stamped with a server receive time taken from a strictly
    increasing clock; ``pull`` answers with the same clock, so a client that
    stores ``serverTime`` never misses a later change.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._last_tick: datetime | None = None
        self.changes: list[StoredChange] = []
        self._by_id: dict[str, StoredChange] = {}
        self.workspaces: dict[str, WorkspaceRecord] = {}
        self.members: dict[str, dict[str, MemberRecord]] = {}
        self.invites: dict[str, InviteRecord] = {}

    def _tick(self) -> datetime:
        now = self._clock()
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + _TICK
        self._last_tick = now
        return now

    # ------------------------------------------------------------------
    def ingest(self, workspace_id: str, changes: Iterable[Any]) -> list[str]:
        """Store a batch of changes, all or nothing. Re-sent event ids are acked again."""

        events: list[ChangeEvent] = []
        for raw in changes:
            try:
                event = ChangeEvent.from_wire(raw)
            except MalformedRemoteEvent as err:
                raise ValueError(str(err)) from err
            if event.workspace_id != workspace_id:
                raise ValueError(f"change {event.id} belongs to workspace {event.workspace_id}, not {workspace_id}")
            events.append(event)
        acked: list[str] = []
        for event in events:
            if event.id not in self._by_id:
                stored = StoredChange(event.to_wire(), workspace_id, self._tick())
                self.changes.append(stored)
                self._by_id[event.id] = stored
            acked.append(event.id)
        return acked

    def pull(self, workspace_id: str, since: str | None) -> tuple[list[dict[str, Any]], str]:
        since_ts = parse_timestamp(since) if since else None
        if since and since_ts is None:
            raise ValueError(f"invalid since timestamp: {since}")
        server_time = self._tick()
        pending = [
            {**stored.event, "receivedAt": isoformat(stored.received_at)}
            for stored in self.changes
            if stored.workspace_id == workspace_id and (since_ts is None or stored.received_at > since_ts)
        ]
        return pending, isoformat(server_time)

    # ------------------------------------------------------------------
    def create_workspace(self, name: str, owner_email: str | None) -> WorkspaceRecord:
        workspace_id = f"ws-{uuid.uuid4().hex[:12]}"
        record = WorkspaceRecord(workspace_id, name, generate_invite_code(), isoformat(self._clock()))
        self.workspaces[workspace_id] = record
        self.invites[record.invite_code] = InviteRecord(workspace_id, None)
        self.members[workspace_id] = {}
        if owner_email:
            self._add_member(workspace_id, owner_email, ROLE_OWNER)
        return record

    def create_invites(self, workspace_id: str, emails: Iterable[str]) -> list[dict[str, str]]:
        self._require_workspace(workspace_id)
        invites: list[dict[str, str]] = []
        for email in emails:
            cleaned = str(email).strip().lower()
            if not cleaned:
                continue
            code = generate_invite_code()
            while code in self.invites:
                code = generate_invite_code()
            self.invites[code] = InviteRecord(workspace_id, cleaned)
            invites.append({"email": cleaned, "inviteCode": code})
        return invites

    def accept_invite(self, email: str, invite_code: str, device_id: str | None) -> MemberRecord:
        invite = self.invites.get(invite_code.strip().upper())
        if invite is None or invite.used:
            raise KeyError(invite_code)
        cleaned = email.strip().lower()
        if invite.email is not None and invite.email != cleaned:
            raise PermissionError(f"invite {invite_code} was issued to a different email")
        if invite.email is not None:
            invite.used = True
        member = self.members[invite.workspace_id].get(cleaned) or self._add_member(
            invite.workspace_id, cleaned, ROLE_MEMBER
        )
        if device_id:
            member.device_ids.add(device_id)
        return member

    def list_members(self, workspace_id: str) -> list[dict[str, str]]:
        self._require_workspace(workspace_id)
        return [
            {"email": member.email, "role": member.role, "createdAt": member.created_at}
            for member in self.members[workspace_id].values()
        ]

    def workspace_for_invite(self, invite_code: str) -> str:
        return self.invites[invite_code.strip().upper()].workspace_id

    def _add_member(self, workspace_id: str, email: str, role: str) -> MemberRecord:
        member = MemberRecord(email.strip().lower(), role, isoformat(self._clock()))
        self.members[workspace_id][member.email] = member
        return member

    def _require_workspace(self, workspace_id: str) -> WorkspaceRecord:
        record = self.workspaces.get(workspace_id)
        if record is None:
            raise HTTPException(status_code=404, detail={"error": "unknown_workspace", "workspace": workspace_id})
        return record


def create_app(api_keys: Mapping[str, str] | Iterable[str] | None = None, state: SyncServerState | None = None) -> FastAPI:
    app = FastAPI(title="jobledger sync")
    state = state or SyncServerState()
    app.state.state = state
    app.state.api_keys = normalise_api_keys(api_keys)

    @app.post("/push")
    async def handle_push(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        workspace_id = str(data.get("workspaceId") or "").strip()
        changes = data.get("changes")
        if not workspace_id or not isinstance(changes, list):
            raise HTTPException(status_code=400, detail="workspaceId and changes are required")
        try:
            acked = state.ingest(workspace_id, changes)
        except ValueError as err:
            raise HTTPException(status_code=400, detail=str(err)) from err
        return {"acked": acked}

    @app.get("/pull")
    async def handle_pull(
        principal: Principal = Depends(principal_dependency),  # noqa: B008
        workspace_id: str = Query(..., alias="workspaceId"),
        since: str | None = Query(None),
    ) -> dict[str, Any]:
        try:
            changes, server_time = state.pull(workspace_id, since)
        except ValueError as err:
            raise HTTPException(status_code=400, detail=str(err)) from err
        return {"changes": changes, "serverTime": server_time}

    @app.post("/workspaces")
    async def handle_create_workspace(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        name = str(data.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="name required")
        record = state.create_workspace(name, data.get("ownerEmail"))
        return {"workspaceId": record.workspace_id, "inviteCode": record.invite_code, "name": record.name}

    @app.post("/workspaces/{workspace_id}/invites")
    async def handle_create_invites(
        workspace_id: str,
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        emails = data.get("emails")
        if not isinstance(emails, list):
            raise HTTPException(status_code=400, detail="emails must be a list")
        return {"invites": state.create_invites(workspace_id, emails)}

    @app.post("/join")
    async def handle_join(
        data: dict[str, Any],
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        email = str(data.get("email") or "").strip()
        code = str(data.get("inviteCode") or "").strip()
        if not email or not code:
            raise HTTPException(status_code=400, detail="email and inviteCode required")
        try:
            member = state.accept_invite(email, code, data.get("deviceId"))
        except KeyError as err:
            raise HTTPException(status_code=404, detail={"error": "invalid_invite"}) from err
        except PermissionError as err:
            raise HTTPException(status_code=409, detail={"error": "invite_email_mismatch"}) from err
        return {"workspaceId": state.workspace_for_invite(code), "role": member.role}

    @app.get("/workspaces/{workspace_id}/members")
    async def handle_members(
        workspace_id: str,
        principal: Principal = Depends(principal_dependency),  # noqa: B008
    ) -> dict[str, Any]:
        return {"members": state.list_members(workspace_id)}

    return app


def main() -> None:
    import uvicorn

    keys = [key for key in os.environ.get(ENV_API_KEYS, "").split(",") if key.strip()]
    if os.environ.get(ENV_SYNC_API_KEY):
        keys.append(os.environ[ENV_SYNC_API_KEY])
    uvicorn.run(create_app(keys), host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()

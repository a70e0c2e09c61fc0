from __future__ import annotations

import re
from typing import cast

import pytest
from aiohttp import ClientSession
from fakes import FakeResponse, FakeSession

from jobledger.sync import (
    IdentityError,
    IdentityManager,
    LocalSyncStore,
    RemoteUnavailable,
    SyncConfig,
    WorkspaceClient,
    generate_invite_code,
)


def test_device_id_is_stable_across_restarts(store: LocalSyncStore) -> None:
    first = IdentityManager(store).device_id
    assert first.startswith("dev-")
    assert IdentityManager(store).device_id == first


def test_sign_in_without_workspace_cannot_sync(store: LocalSyncStore) -> None:
    identity = IdentityManager(store)
    context = identity.sign_in("user-1", email="a@acme.test")
    assert context.device_id == identity.device_id
    assert not identity.can_sync
    identity.link_workspace("ws-1")
    assert identity.can_sync
    assert identity.current.workspace_id == "ws-1"
    assert identity.current.email == "a@acme.test"


def test_session_survives_restart(store: LocalSyncStore) -> None:
    IdentityManager(store).sign_in("user-1", workspace_id="ws-1", role="owner")
    restored = IdentityManager(store).current
    assert restored is not None
    assert (restored.user_id, restored.workspace_id, restored.role) == ("user-1", "ws-1", "owner")


def test_link_requires_session(store: LocalSyncStore) -> None:
    identity = IdentityManager(store)
    with pytest.raises(IdentityError):
        identity.link_workspace("ws-1")
    with pytest.raises(IdentityError):
        identity.sign_in("   ")


def test_sign_out_keeps_device_id(store: LocalSyncStore) -> None:
    identity = IdentityManager(store)
    device_id = identity.device_id
    identity.sign_in("user-1", workspace_id="ws-1")
    identity.sign_out()
    assert identity.current is None
    assert IdentityManager(store).current is None
    assert IdentityManager(store).device_id == device_id


def test_invalidate_clears_session_and_notifies(store: LocalSyncStore) -> None:
    identity = IdentityManager(store)
    seen = []
    unsubscribe = identity.register_listener(seen.append)
    identity.sign_in("user-1", workspace_id="ws-1")
    identity.invalidate("token expired")
    assert identity.current is None
    assert not identity.can_sync
    assert identity.last_invalidation == "token expired"
    assert seen[0].user_id == "user-1"
    assert seen[1] is None

    unsubscribe()
    identity.sign_in("user-2", workspace_id="ws-1")
    assert len(seen) == 2
    assert identity.last_invalidation is None


def test_listener_errors_do_not_block_changes(store: LocalSyncStore) -> None:
    identity = IdentityManager(store)

    def broken(_context) -> None:
        raise RuntimeError("listener failed")

    identity.register_listener(broken)
    identity.sign_in("user-1", workspace_id="ws-1")
    assert identity.can_sync


def test_invite_codes_have_expected_shape() -> None:
    assert re.fullmatch(r"INV-[A-Z0-9]{6}", generate_invite_code())


@pytest.mark.asyncio
async def test_local_workspace_client_answers_offline() -> None:
    client = WorkspaceClient(SyncConfig())
    assert client.local_only
    info = await client.create_workspace("Acme Plumbing")
    assert info.workspace_id.startswith("ws-")
    assert info.name == "Acme Plumbing"
    invites = await client.create_invites(info.workspace_id, [" Tech@Acme.test ", ""])
    assert [invite.email for invite in invites] == ["tech@acme.test"]
    membership = await client.accept_invite("tech@acme.test", "inv-abc123", "dev-b")
    assert membership.workspace_id == "ws-INV-ABC123"
    assert membership.role == "member"
    assert await client.list_members(info.workspace_id) == []


def make_client(session: FakeSession) -> WorkspaceClient:
    config = SyncConfig(base_url="https://sync.example", api_key="k", timeout=5)
    return WorkspaceClient(config, session=cast(ClientSession, session))


@pytest.mark.asyncio
async def test_remote_workspace_calls() -> None:
    session = FakeSession(
        FakeResponse(200, {"workspaceId": "ws-42", "inviteCode": "INV-AAAAAA", "name": "Acme"}),
        FakeResponse(200, {"invites": [{"email": "tech@acme.test", "inviteCode": "INV-BBBBBB"}]}),
        FakeResponse(200, {"workspaceId": "ws-42", "role": "member"}),
        FakeResponse(200, {"members": [{"email": "boss@acme.test", "role": "owner", "createdAt": "2025-03-01T09:00:00Z"}]}),
    )
    client = make_client(session)

    info = await client.create_workspace("Acme", "boss@acme.test")
    assert (info.workspace_id, info.invite_code) == ("ws-42", "INV-AAAAAA")
    assert session.requests[0]["json"] == {"name": "Acme", "ownerEmail": "boss@acme.test"}

    invites = await client.create_invites("ws-42", ["tech@acme.test"])
    assert invites[0].invite_code == "INV-BBBBBB"
    assert session.requests[1]["url"] == "https://sync.example/workspaces/ws-42/invites"

    membership = await client.accept_invite(" Tech@Acme.test", "inv-bbbbbb", "dev-b")
    assert membership.workspace_id == "ws-42"
    assert session.requests[2]["json"] == {"email": "tech@acme.test", "inviteCode": "INV-BBBBBB", "deviceId": "dev-b"}

    members = await client.list_members("ws-42")
    assert members[0].role == "owner"
    assert session.requests[3]["method"] == "GET"


@pytest.mark.asyncio
async def test_remote_join_with_bad_code_is_unavailable() -> None:
    client = make_client(FakeSession(FakeResponse(404, {"detail": {"error": "invalid_invite"}})))
    with pytest.raises(RemoteUnavailable):
        await client.accept_invite("tech@acme.test", "INV-ZZZZZZ", "dev-b")


@pytest.mark.asyncio
async def test_remote_workspace_response_without_id_is_rejected() -> None:
    client = make_client(FakeSession(FakeResponse(200, {"inviteCode": "INV-AAAAAA"})))
    with pytest.raises(RemoteUnavailable, match="workspaceId"):
        await client.create_workspace("Acme")

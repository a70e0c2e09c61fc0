"""Who is syncing, into which workspace, from which device."""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from aiohttp import ClientSession

from ..const import ROLE_MEMBER, ROLE_OWNER
from .config import SyncConfig
from .events import SyncError
from .gateway import HttpRemoteGateway, RemoteUnavailable
from .local_store import LocalSyncStore

_LOGGER = logging.getLogger(__name__)

_DEVICE_KEY = "device_id"
_IDENTITY_KEY = "identity"
_INVITE_ALPHABET = string.ascii_uppercase + string.digits

IdentityListener = Callable[["IdentityContext | None"], None]


class IdentityError(SyncError):
    """Raised when an identity operation needs a signed-in user."""


@dataclass(slots=True)
class IdentityContext:
    user_id: str
    device_id: str
    workspace_id: str | None = None
    role: str = ROLE_MEMBER
    email: str | None = None

    @property
    def can_sync(self) -> bool:
        """A session and a linked workspace are both required before syncing."""

        return bool(self.user_id and self.workspace_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], device_id: str) -> IdentityContext:
        role = str(payload.get("role") or ROLE_MEMBER)
        return cls(
            user_id=str(payload["user_id"]),
            device_id=device_id,
            workspace_id=payload.get("workspace_id") or None,
            role=role if role in (ROLE_OWNER, ROLE_MEMBER) else ROLE_MEMBER,
            email=payload.get("email") or None,
        )


class IdentityManager:
    """Holds the current :class:`IdentityContext` and persists it across restarts.

    The device id is generated once per local store and is kept through
    sign-out so the backend can keep attributing changes to this install.
    """

    def __init__(self, store: LocalSyncStore) -> None:
        self.store = store
        self._listeners: list[IdentityListener] = []
        self.last_invalidation: str | None = None
        self._device_id = self._load_device_id()
        self._current = self._load_context()

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def current(self) -> IdentityContext | None:
        return self._current

    @property
    def can_sync(self) -> bool:
        return self._current is not None and self._current.can_sync

    # ------------------------------------------------------------------
    def sign_in(
        self,
        user_id: str,
        *,
        email: str | None = None,
        workspace_id: str | None = None,
        role: str = ROLE_MEMBER,
    ) -> IdentityContext:
        user_id = str(user_id).strip()
        if not user_id:
            raise IdentityError("user id is required to sign in")
        context = IdentityContext(
            user_id=user_id,
            device_id=self._device_id,
            workspace_id=workspace_id or None,
            role=role,
            email=email,
        )
        self.last_invalidation = None
        self._set(context)
        _LOGGER.info("Signed in %s (workspace=%s)", user_id, context.workspace_id or "none")
        return context

    def link_workspace(self, workspace_id: str, *, role: str | None = None) -> IdentityContext:
        if self._current is None:
            raise IdentityError("sign in before linking a workspace")
        workspace_id = str(workspace_id).strip()
        if not workspace_id:
            raise IdentityError("workspace id must not be empty")
        context = IdentityContext(
            user_id=self._current.user_id,
            device_id=self._device_id,
            workspace_id=workspace_id,
            role=role or self._current.role,
            email=self._current.email,
        )
        self._set(context)
        _LOGGER.info("Linked workspace %s as %s", workspace_id, context.role)
        return context

    def sign_out(self) -> None:
        if self._current is None:
            return
        _LOGGER.info("Signed out %s", self._current.user_id)
        self._set(None)

    def invalidate(self, reason: str) -> None:
        """Drop the session immediately; sync stays halted until the next sign-in."""

        self.last_invalidation = reason
        if self._current is None:
            return
        _LOGGER.warning("Session for %s invalidated: %s", self._current.user_id, reason)
        self._set(None)

    def register_listener(self, listener: IdentityListener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    def _set(self, context: IdentityContext | None) -> None:
        self._current = context
        if context is None:
            self.store.delete_value(_IDENTITY_KEY)
        else:
            self.store.set_value(_IDENTITY_KEY, context.to_dict())
        for listener in list(self._listeners):
            try:
                listener(context)
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.debug("Identity listener raised error: %s", err, exc_info=True)

    def _load_device_id(self) -> str:
        device_id = self.store.get_value(_DEVICE_KEY)
        if isinstance(device_id, str) and device_id:
            return device_id
        device_id = f"dev-{uuid.uuid4()}"
        self.store.set_value(_DEVICE_KEY, device_id)
        return device_id

    def _load_context(self) -> IdentityContext | None:
        payload = self.store.get_value(_IDENTITY_KEY)
        if not isinstance(payload, Mapping) or not payload.get("user_id"):
            return None
        return IdentityContext.from_dict(payload, self._device_id)


# ----------------------------------------------------------------------
@dataclass(slots=True)
class WorkspaceInfo:
    workspace_id: str
    invite_code: str
    name: str = ""


@dataclass(slots=True)
class Invite:
    email: str
    invite_code: str


@dataclass(slots=True)
class Membership:
    workspace_id: str
    role: str = ROLE_MEMBER


@dataclass(slots=True)
class Member:
    email: str
    role: str
    created_at: str | None = None


def generate_invite_code() -> str:
    return "INV-" + "".join(secrets.choice(_INVITE_ALPHABET) for _ in range(6))


class WorkspaceClient:
    """Membership calls against the workspace backend.

    Without a configured backend every call answers locally so a single device
    can onboard and keep working offline.
    """

    def __init__(self, config: SyncConfig, session: ClientSession | None = None) -> None:
        self.config = config
        self._http: HttpRemoteGateway | None = None
        if config.configured:
            self._http = HttpRemoteGateway(config.base_url, config.api_key, session=session, timeout=config.timeout)

    @property
    def local_only(self) -> bool:
        return self._http is None

    async def async_close(self) -> None:
        if self._http is not None:
            await self._http.async_close()

    async def create_workspace(self, name: str, owner_email: str | None = None) -> WorkspaceInfo:
        if self._http is None:
            return WorkspaceInfo(f"ws-{uuid.uuid4().hex[:12]}", generate_invite_code(), name)
        data = await self._http.request_json("POST", "/workspaces", json_body={"name": name, "ownerEmail": owner_email})
        workspace_id = _require_text(data, "workspaceId")
        return WorkspaceInfo(workspace_id, str(data.get("inviteCode") or ""), str(data.get("name") or name))

    async def create_invites(self, workspace_id: str, emails: Iterable[str]) -> list[Invite]:
        cleaned = [email.strip().lower() for email in emails if email and email.strip()]
        if self._http is None:
            return [Invite(email, generate_invite_code()) for email in cleaned]
        data = await self._http.request_json(
            "POST", f"/workspaces/{workspace_id}/invites", json_body={"emails": cleaned}
        )
        invites = data.get("invites") if isinstance(data, Mapping) else None
        if not isinstance(invites, list):
            raise RemoteUnavailable("invite response missing invites list")
        return [
            Invite(str(item.get("email") or ""), str(item.get("inviteCode") or ""))
            for item in invites
            if isinstance(item, Mapping)
        ]

    async def accept_invite(self, email: str, invite_code: str, device_id: str) -> Membership:
        code = invite_code.strip().upper()
        if self._http is None:
            return Membership(f"ws-{code}", ROLE_MEMBER)
        data = await self._http.request_json(
            "POST",
            "/join",
            json_body={"email": email.strip().lower(), "inviteCode": code, "deviceId": device_id},
        )
        role = str(data.get("role") or ROLE_MEMBER)
        return Membership(_require_text(data, "workspaceId"), role if role in (ROLE_OWNER, ROLE_MEMBER) else ROLE_MEMBER)

    async def list_members(self, workspace_id: str) -> list[Member]:
        if self._http is None:
            return []
        data = await self._http.request_json("GET", f"/workspaces/{workspace_id}/members")
        members = data.get("members") if isinstance(data, Mapping) else None
        if not isinstance(members, list):
            raise RemoteUnavailable("member response missing members list")
        return [
            Member(
                email=str(item.get("email") or ""),
                role=str(item.get("role") or ROLE_MEMBER),
                created_at=item.get("createdAt") or None,
            )
            for item in members
            if isinstance(item, Mapping)
        ]


def _require_text(data: Any, key: str) -> str:
    value = data.get(key) if isinstance(data, Mapping) else None
    if not isinstance(value, str) or not value.strip():
        raise RemoteUnavailable(f"response missing {key}")
    return value.strip()


__all__ = [
    "IdentityContext",
    "IdentityError",
    "IdentityManager",
    "Invite",
    "Member",
    "Membership",
    "WorkspaceClient",
    "WorkspaceInfo",
    "generate_invite_code",
]

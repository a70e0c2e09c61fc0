"""Transport between the local change log and the workspace backend."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from ..utils.timestamps import now_iso
from .config import SyncConfig
from .events import ChangeEvent, SyncError

_LOGGER = logging.getLogger(__name__)


class RemoteUnavailable(SyncError):
    """The backend could not be reached or answered with something unusable."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthenticationInvalid(SyncError):
    """The backend rejected the session credentials."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(slots=True)
class PushAck:
    acked: tuple[str, ...] = ()


@dataclass(slots=True)
class PullResult:
    """Raw change mappings newer than the requested checkpoint."""

    changes: list[Any] = field(default_factory=list)
    server_time: str = ""


class RemoteGateway(Protocol):
    local_only: bool

    async def push(self, workspace_id: str, device_id: str, events: Sequence[ChangeEvent]) -> PushAck: ...

    async def pull(self, workspace_id: str, since: str | None) -> PullResult: ...

    async def async_close(self) -> None: ...


class LocalOnlyGateway:
    """Stand-in used when no backend is configured.

    Every push is acknowledged and every pull is empty, so the coordinator
    runs the same cycle with or without a server.
    """

    local_only = True

    async def push(self, workspace_id: str, device_id: str, events: Sequence[ChangeEvent]) -> PushAck:
        return PushAck(tuple(event.id for event in events))

    async def pull(self, workspace_id: str, since: str | None) -> PullResult:
        return PullResult([], now_iso())

    async def async_close(self) -> None:
        return None


class HttpRemoteGateway:
    """JSON-over-HTTP gateway speaking the ``/push`` and ``/pull`` contract."""

    local_only = False

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: ClientSession | None = None,
        timeout: float = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def async_close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    async def push(self, workspace_id: str, device_id: str, events: Sequence[ChangeEvent]) -> PushAck:
        if not events:
            return PushAck()
        body = {
            "workspaceId": workspace_id,
            "deviceId": device_id,
            "changes": [event.to_wire() for event in events],
        }
        data = await self.request_json("POST", "/push", json_body=body)
        acked = data.get("acked") if isinstance(data, Mapping) else None
        if not isinstance(acked, list):
            raise RemoteUnavailable("push response missing acked list")
        return PushAck(tuple(str(item) for item in acked))

    async def pull(self, workspace_id: str, since: str | None) -> PullResult:
        params = {"workspaceId": workspace_id}
        if since:
            params["since"] = since
        data = await self.request_json("GET", "/pull", params=params)
        if not isinstance(data, Mapping):
            raise RemoteUnavailable("pull response is not an object")
        changes = data.get("changes")
        server_time = data.get("serverTime")
        if not isinstance(changes, list) or not isinstance(server_time, str) or not server_time:
            raise RemoteUnavailable("pull response missing changes or serverTime")
        return PullResult(list(changes), server_time)

    # ------------------------------------------------------------------
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def _ensure_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        session = self._ensure_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method,
                url,
                json=json_body,
                params=params,
                headers=self._headers(),
                timeout=ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (ClientError, asyncio.TimeoutError) as err:
            raise RemoteUnavailable(f"{method} {path} failed: {str(err) or type(err).__name__}") from err

        if status in (401, 403):
            raise AuthenticationInvalid(f"{method} {path} rejected credentials: HTTP {status}", status=status)
        if status >= 400:
            raise RemoteUnavailable(f"{method} {path} failed: HTTP {status} {text}".rstrip(), status=status)
        try:
            return json.loads(text) if text else {}
        except json.JSONDecodeError as err:
            raise RemoteUnavailable(f"{method} {path} returned invalid JSON: {err}", status=status) from err


def create_gateway(config: SyncConfig, *, session: ClientSession | None = None) -> RemoteGateway:
    """Pick the gateway implementation once, from configuration."""

    if not config.configured:
        _LOGGER.info("No sync backend configured; running in local-only mode")
        return LocalOnlyGateway()
    return HttpRemoteGateway(config.base_url, config.api_key, session=session, timeout=config.timeout)


__all__ = [
    "AuthenticationInvalid",
    "HttpRemoteGateway",
    "LocalOnlyGateway",
    "PullResult",
    "PushAck",
    "RemoteGateway",
    "RemoteUnavailable",
    "create_gateway",
]

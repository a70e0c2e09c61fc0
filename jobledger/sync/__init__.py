"""Local-first sync engine: entity store, change log, gateway and coordinator."""

from .change_log import ChangeLog
from .config import ConfigError, SyncConfig
from .conflict import ConflictResolver, TiePolicy
from .coordinator import CycleResult, SyncCoordinator, SyncScheduler, SyncState
from .entity_store import EntityNotFoundError, EntityStore, ReferentialIntegrityError
from .events import ChangeEvent, MalformedRemoteEvent, Operation, SyncError
from .gateway import (
    AuthenticationInvalid,
    HttpRemoteGateway,
    LocalOnlyGateway,
    PullResult,
    PushAck,
    RemoteGateway,
    RemoteUnavailable,
    create_gateway,
)
from .identity import IdentityContext, IdentityError, IdentityManager, WorkspaceClient, generate_invite_code
from .local_store import LocalSyncStore
from .manager import SyncManager

__all__ = [
    "ChangeEvent",
    "Operation",
    "ChangeLog",
    "LocalSyncStore",
    "EntityStore",
    "EntityNotFoundError",
    "ReferentialIntegrityError",
    "ConflictResolver",
    "TiePolicy",
    "RemoteGateway",
    "HttpRemoteGateway",
    "LocalOnlyGateway",
    "PushAck",
    "PullResult",
    "create_gateway",
    "SyncCoordinator",
    "SyncScheduler",
    "SyncState",
    "CycleResult",
    "IdentityContext",
    "IdentityManager",
    "WorkspaceClient",
    "generate_invite_code",
    "SyncConfig",
    "SyncManager",
    "SyncError",
    "ConfigError",
    "IdentityError",
    "MalformedRemoteEvent",
    "RemoteUnavailable",
    "AuthenticationInvalid",
]

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from ..models import Record
from ..utils.timestamps import parse_timestamp
from .events import ChangeEvent


class TiePolicy(StrEnum):
    """Which side wins when local and remote timestamps are identical."""

    REMOTE = "remote"
    LOCAL = "local"


class ConflictResolver:
    """Whole-record last-write-wins between a local record and a pulled change.

    The newer ``updated_at`` wins. Exact ties go to the remote event unless
    the resolver is built with ``TiePolicy.LOCAL``.
    """

    def __init__(self, tie_policy: TiePolicy | str = TiePolicy.REMOTE) -> None:
        self.tie_policy = TiePolicy(tie_policy)

    def remote_wins(self, local_updated_at: str | datetime | None, remote_updated_at: datetime) -> bool:
        local_ts = parse_timestamp(local_updated_at)
        remote_ts = parse_timestamp(remote_updated_at)
        if local_ts is None:
            return True
        if remote_ts is None:
            return False
        if remote_ts > local_ts:
            return True
        if remote_ts < local_ts:
            return False
        return self.tie_policy == TiePolicy.REMOTE

    def should_apply(self, local: Record | None, event: ChangeEvent) -> bool:
        if local is None:
            return True
        return self.remote_wins(local.updated_at, event.record_updated_at)


__all__ = ["ConflictResolver", "TiePolicy"]

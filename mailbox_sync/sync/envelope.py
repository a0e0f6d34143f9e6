"""
Sync envelope: one remote/local pair moving through the engine
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..models.sync_models import (
    EnvelopeState,
    LocalRecord,
    RemoteItem,
    SyncAction,
    SyncDirection,
)


class EnvelopeStateError(Exception):
    """Illegal envelope state transition"""
    pass


@dataclass
class SyncEnvelope:
    """
    Unit of work pairing a remote item with its resolved local record

    The action is decided exactly once per pass; the envelope then ends up
    either committed or deferred.
    """
    remote_item: Optional[RemoteItem]
    direction: SyncDirection = SyncDirection.DOWNLOAD
    local_record: Optional[LocalRecord] = None
    action: Optional[SyncAction] = None
    state: EnvelopeState = EnvelopeState.PENDING
    lock_keys: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def remote_id(self) -> Optional[str]:
        return self.remote_item.remote_id if self.remote_item else None

    @property
    def timestamp(self) -> Optional[datetime]:
        """Last-modified time used by checkpoint advancement"""
        return self.remote_item.last_modified if self.remote_item else None

    def resolve(self, action: SyncAction, local_record: Optional[LocalRecord] = None) -> None:
        if self.action is not None:
            raise EnvelopeStateError(
                f"Action already decided as {self.action.value} for {self.remote_id}"
            )
        self.action = action
        if local_record is not None:
            self.local_record = local_record
        self.state = EnvelopeState.RESOLVED

    def commit(self) -> None:
        if self.state != EnvelopeState.RESOLVED or self.action == SyncAction.REPEAT:
            raise EnvelopeStateError(f"Cannot commit envelope in state {self.state.value}")
        self.state = EnvelopeState.COMMITTED

    def defer(self, reason: str) -> None:
        if self.state == EnvelopeState.COMMITTED:
            raise EnvelopeStateError("Cannot defer a committed envelope")
        self.error = reason
        self.state = EnvelopeState.DEFERRED

    @property
    def is_committed(self) -> bool:
        return self.state == EnvelopeState.COMMITTED

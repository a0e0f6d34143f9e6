"""
Sync session context
Holds the checkpoint version for one run, aggregates envelope outcomes and computes the next checkpoint
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from ..models.sync_models import (
    CheckpointPolicy,
    ItemKind,
    Mailbox,
    RemoteItem,
    SyncAction,
    SyncDirection,
    utc_now,
)
from ..utils.result import Result, ResultKind
from .envelope import SyncEnvelope

CHECKPOINT_RESOLUTION = timedelta(microseconds=1)


class SyncSessionError(Exception):
    """A session context could not be established"""
    def __init__(self, message: str, mailbox_id: Optional[str] = None):
        super().__init__(message)
        self.mailbox_id = mailbox_id


@dataclass
class SessionError:
    """Failure captured for one envelope or for enumeration"""
    reason: str
    kind: ResultKind
    remote_id: Optional[str] = None
    action: Optional[SyncAction] = None
    error_code: Optional[str] = None


@dataclass
class SyncReport:
    """Outcome of one session"""
    session_id: str
    mailbox_id: str
    kind: ItemKind
    started_at: datetime
    counts: Dict[str, int] = field(default_factory=dict)
    deferred: int = 0
    needs_rerun: bool = False
    checkpoint: Optional[datetime] = None
    errors: List[SessionError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "mailbox_id": self.mailbox_id,
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "counts": dict(self.counts),
            "deferred": self.deferred,
            "needs_rerun": self.needs_rerun,
            "checkpoint": self.checkpoint.isoformat() if self.checkpoint else None,
            "errors": [
                {"remote_id": e.remote_id, "reason": e.reason, "kind": e.kind.value}
                for e in self.errors
            ],
        }


class SyncContext:
    """
    State of one synchronization run for one mailbox and item kind

    The checkpoint this run started from is the only one it reads; the new
    value is computed by next_checkpoint() and written by the provider's
    commit_changes once the whole batch has been walked.
    """

    def __init__(self, mailbox: Mailbox, kind: ItemKind,
                 start_checkpoint: Optional[datetime],
                 policy: CheckpointPolicy = CheckpointPolicy.HOLD,
                 advance_checkpoint: bool = True,
                 started_at: Optional[datetime] = None):
        self.session_id = uuid.uuid4().hex
        self.mailbox = mailbox
        self.kind = kind
        self.start_checkpoint = start_checkpoint
        self.policy = policy
        self.advance_checkpoint = advance_checkpoint
        self.started_at = started_at or utc_now()
        self.needs_rerun = False
        self.enumeration_complete = True
        self.envelopes: List[SyncEnvelope] = []
        self.errors: List[SessionError] = []
        self._seen: Set[str] = set()

    def is_duplicate(self, item: RemoteItem) -> bool:
        """True when an overlapping page already delivered this item in this session"""
        key = item.identity_key
        if key in self._seen:
            return True
        self._seen.add(key)
        return False

    def add(self, envelope: SyncEnvelope) -> SyncEnvelope:
        self.envelopes.append(envelope)
        return envelope

    def commit(self, envelope: SyncEnvelope) -> None:
        envelope.commit()

    def defer(self, envelope: SyncEnvelope, reason: str, kind: Optional[ResultKind] = None,
              error_code: Optional[str] = None) -> None:
        """Leave an envelope uncommitted; kind is set for failures, None for lock contention"""
        envelope.defer(reason)
        self.needs_rerun = True
        if kind is not None:
            self.errors.append(SessionError(
                reason=reason,
                kind=kind,
                remote_id=envelope.remote_id or (envelope.local_record.id if envelope.local_record else None),
                action=envelope.action,
                error_code=error_code,
            ))

    def fail_enumeration(self, result: Result) -> None:
        self.enumeration_complete = False
        self.needs_rerun = True
        self.errors.append(SessionError(
            reason=result.reason,
            kind=result.kind,
            error_code=result.error.error_code if result.error else None,
        ))

    def record_load_failure(self, item_id: str, result: Result) -> None:
        self.needs_rerun = True
        self.errors.append(SessionError(
            reason=result.reason,
            kind=result.kind,
            remote_id=item_id,
            error_code=result.error.error_code if result.error else None,
        ))

    @property
    def uncommitted(self) -> List[SyncEnvelope]:
        return [
            e for e in self.envelopes
            if not e.is_committed and e.direction != SyncDirection.UPLOAD
        ]

    def next_checkpoint(self) -> Optional[datetime]:
        """
        Checkpoint to persist after this run, or None to leave it untouched

        A clean run advances to the session start time. Otherwise HOLD keeps
        the starting checkpoint; FLOOR stops just before the earliest
        uncommitted item. Neither policy moves the checkpoint backwards.
        """
        if not self.advance_checkpoint:
            return None

        uncommitted = self.uncommitted
        if self.enumeration_complete and not uncommitted:
            return self.started_at

        if self.policy == CheckpointPolicy.HOLD or not self.enumeration_complete:
            return self.start_checkpoint

        timestamps = [e.timestamp for e in uncommitted]
        if any(ts is None for ts in timestamps):
            return self.start_checkpoint

        candidate = min(self.started_at, min(timestamps) - CHECKPOINT_RESOLUTION)
        if self.start_checkpoint is not None and candidate < self.start_checkpoint:
            return self.start_checkpoint
        return candidate

    def report(self, checkpoint: Optional[datetime] = None) -> SyncReport:
        counts: Dict[str, int] = {}
        for envelope in self.envelopes:
            if envelope.action is not None:
                counts[envelope.action.value] = counts.get(envelope.action.value, 0) + 1
        return SyncReport(
            session_id=self.session_id,
            mailbox_id=self.mailbox.id,
            kind=self.kind,
            started_at=self.started_at,
            counts=counts,
            deferred=len([e for e in self.envelopes if not e.is_committed]),
            needs_rerun=self.needs_rerun,
            checkpoint=checkpoint,
            errors=list(self.errors),
        )

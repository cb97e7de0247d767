"""Scan session lifecycle (core domain).

All status changes go through ScanStateMachine, which validates them against
the transition table and writes them as a compare-and-set on the previous
status so concurrent writers cannot interleave silently.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from core.errors import (
    ConcurrentModificationError,
    ErrorCode,
    ErrorMetadata,
    ErrorType,
    InvalidTransitionError,
    SessionNotFoundError,
    categorize_error,
)
from core.models import Checkpoint, RunType, ScanSession, SessionError, SessionStats, utc_now
from core.ports import SessionStorePort
from core.states import INACTIVE_STATES, ScanState, is_valid_transition

LOGGER = logging.getLogger(__name__)

_CANCEL_ATTEMPTS = 3


def _session_error(metadata: ErrorMetadata, retry_count: int, now: datetime) -> SessionError:
    diagnostic: Optional[dict[str, Any]] = None
    if metadata.type == ErrorType.CRITICAL:
        diagnostic = {"context": metadata.context, "stack_trace": metadata.stack_trace}
    return SessionError(
        type=metadata.type,
        code=metadata.code,
        message=metadata.message,
        retry_count=retry_count,
        last_retry_at=now,
        diagnostic=diagnostic,
    )


class ScanStateMachine:
    def __init__(self, store: SessionStorePort, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def create_session(self, owner_id: str, run_type: RunType = RunType.FULL) -> ScanSession:
        now = self._clock()
        session = ScanSession(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            run_type=run_type,
            status=ScanState.QUEUED,
            started_at=now,
            updated_at=now,
        )
        self._store.insert_session(session)
        LOGGER.info("Created %s scan session %s for %s", run_type.value, session.id, owner_id)
        return session

    def find_session(self, session_id: str) -> Optional[ScanSession]:
        return self._store.get_session(session_id)

    def get_session(self, session_id: str) -> ScanSession:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Scan session not found: {session_id}")
        return session

    def get_active_session(self, owner_id: str) -> Optional[ScanSession]:
        return self._store.find_active_session(owner_id)

    def latest_session(self, owner_id: str) -> Optional[ScanSession]:
        return self._store.latest_session(owner_id)

    def has_completed_full_scan(self, owner_id: str) -> bool:
        return self._store.has_completed_session(owner_id, RunType.FULL)

    def _write(self, previous: ScanSession, updated: ScanSession) -> ScanSession:
        if not self._store.compare_and_set_session(updated, previous.status):
            raise ConcurrentModificationError(
                f"Session {previous.id} changed while moving {previous.status.value} -> {updated.status.value}"
            )
        return updated

    def transition(
        self,
        session_id: str,
        new_state: ScanState,
        error: Optional[ErrorMetadata] = None,
    ) -> ScanSession:
        """Move a session to ``new_state`` if the transition table allows it.

        Entering FAILED records the classified error and bumps retry_count;
        leaving FAILED clears the visible error. Entering COMPLETE stamps
        completed_at.
        """

        session = self.get_session(session_id)
        current = session.status
        if not is_valid_transition(current, new_state):
            raise InvalidTransitionError(
                f"Invalid transition from {current.value} to {new_state.value} for session {session_id}"
            )

        now = self._clock()
        updated = replace(session, status=new_state, updated_at=now)
        if new_state == ScanState.FAILED:
            metadata = error or categorize_error(f"Scan failed while {current.value}")
            retry_count = session.retry_count + 1
            updated = replace(
                updated,
                retry_count=retry_count,
                error=_session_error(metadata, retry_count, now),
            )
        elif current == ScanState.FAILED:
            updated = replace(updated, error=None)

        if new_state == ScanState.COMPLETE:
            updated = replace(updated, completed_at=now)

        self._write(session, updated)
        LOGGER.info("Session %s: %s -> %s", session_id, current.value, new_state.value)
        return updated

    def update_checkpoint(self, session_id: str, **partial: Any) -> Checkpoint:
        """Merge the given fields into the checkpoint; other fields are kept."""

        session = self.get_session(session_id)
        checkpoint = session.checkpoint.merged(partial)
        self._store.save_checkpoint(session_id, checkpoint, self._clock())
        return checkpoint

    def update_stats(self, session_id: str, **partial: Any) -> SessionStats:
        session = self.get_session(session_id)
        stats = session.stats.merged(partial)
        self._store.save_stats(session_id, stats, self._clock())
        return stats

    def resume(self, session_id: str) -> ScanSession:
        session = self.get_session(session_id)
        if session.status == ScanState.PAUSED:
            if session.checkpoint.receipts_processed > 0:
                target = ScanState.PARSING
            else:
                target = ScanState.COLLECTING
        elif session.status == ScanState.FAILED:
            target = ScanState.QUEUED
        else:
            raise InvalidTransitionError(
                f"Cannot resume session {session_id} from {session.status.value}"
            )
        return self.transition(session_id, target)

    def cancel(self, session_id: str, reason: str = "Cancelled by user") -> bool:
        """Fail a running session with a permanent USER_CANCELLED error.

        This is the one path allowed to skip the transition table. Returns
        False when the session is already complete or failed.
        """

        for _ in range(_CANCEL_ATTEMPTS):
            session = self.get_session(session_id)
            if session.status in INACTIVE_STATES:
                return False

            now = self._clock()
            metadata = ErrorMetadata(
                type=ErrorType.PERMANENT,
                code=ErrorCode.USER_CANCELLED.value,
                message=reason,
                retryable=False,
            )
            retry_count = session.retry_count + 1
            updated = replace(
                session,
                status=ScanState.FAILED,
                updated_at=now,
                retry_count=retry_count,
                error=_session_error(metadata, retry_count, now),
            )
            if self._store.compare_and_set_session(updated, session.status):
                LOGGER.warning(
                    "Session %s cancelled while %s (outside the transition table): %s",
                    session_id,
                    session.status.value,
                    reason,
                )
                return True

        raise ConcurrentModificationError(f"Session {session_id} kept changing while cancelling")

    def cleanup_old_sessions(self, older_than_days: int) -> int:
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = self._store.delete_sessions_before(cutoff, INACTIVE_STATES)
        if removed:
            LOGGER.info("Removed %s finished sessions older than %s days", removed, older_than_days)
        return removed

    def record_diagnostic(self, session_id: str, metadata: ErrorMetadata) -> None:
        self._store.log_error(session_id, metadata, self._clock())

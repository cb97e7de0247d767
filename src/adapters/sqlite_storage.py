"""SQLite storage adapter.

Implements every core storage port (locks, sessions, evidence, candidates)
plus the confirmed-subscription lookup on a single SQLite database. Each
public method is one atomic operation: writes run inside a
``BEGIN IMMEDIATE`` transaction so concurrent processes serialise on the
database write lock.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Optional, Sequence

from core.errors import ErrorMetadata, ErrorType
from core.models import (
    Cadence,
    CandidateStatus,
    Checkpoint,
    ConfirmedSubscription,
    DetectionCandidate,
    EvidenceRecord,
    ReceiptKind,
    ResourceLock,
    RunType,
    ScanSession,
    SessionError,
    SessionStats,
    from_epoch_ms,
    to_epoch_ms,
)
from core.states import ScanState

_SCHEMA = (
    # Lease times are epoch milliseconds so expiry checks are integer compares.
    """
    CREATE TABLE IF NOT EXISTS resource_locks (
        id TEXT PRIMARY KEY,
        resource_type TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        acquired_at_ms INTEGER NOT NULL,
        expires_at_ms INTEGER NOT NULL,
        renewal_token TEXT NOT NULL,
        timeout_ms INTEGER NOT NULL,
        renewal_count INTEGER NOT NULL DEFAULT 0,
        UNIQUE (resource_type, resource_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_locks_owner ON resource_locks (owner_id)",
    """
    CREATE TABLE IF NOT EXISTS scan_sessions (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        run_type TEXT NOT NULL,
        status TEXT NOT NULL,
        checkpoint_json TEXT NOT NULL,
        stats_json TEXT NOT NULL,
        error_json TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_owner ON scan_sessions (owner_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS evidence (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        message_id TEXT,
        merchant_text TEXT,
        merchant_key TEXT,
        amount REAL,
        currency TEXT,
        cadence_hint TEXT,
        receipt_kind TEXT NOT NULL DEFAULT 'charge',
        received_at TEXT NOT NULL,
        subject TEXT NOT NULL DEFAULT '',
        body TEXT NOT NULL DEFAULT '',
        parsed INTEGER NOT NULL DEFAULT 0,
        parse_failed INTEGER NOT NULL DEFAULT 0,
        candidate_id TEXT,
        subscription_id TEXT,
        UNIQUE (owner_id, message_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_evidence_owner ON evidence (owner_id, parsed)",
    """
    CREATE TABLE IF NOT EXISTS candidates (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        merchant_key TEXT NOT NULL,
        proposed_name TEXT NOT NULL,
        amount REAL NOT NULL,
        currency TEXT NOT NULL,
        cadence TEXT NOT NULL,
        next_billing TEXT NOT NULL,
        confidence REAL NOT NULL,
        detection_reason TEXT NOT NULL,
        status TEXT NOT NULL,
        evidence_ids_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        reviewed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_candidates_owner ON candidates (owner_id, status)",
    """
    CREATE TABLE IF NOT EXISTS confirmed_subscriptions (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL
    )
    """,
    # Diagnostics for critical failures, kept for operators.
    """
    CREATE TABLE IF NOT EXISTS error_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        type TEXT NOT NULL,
        code TEXT NOT NULL,
        message TEXT NOT NULL,
        context_json TEXT,
        stack_trace TEXT,
        logged_at TEXT NOT NULL
    )
    """,
)

_SESSION_ORDER = "ORDER BY started_at DESC, rowid DESC"


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _error_to_json(error: Optional[SessionError]) -> Optional[str]:
    if error is None:
        return None
    return json.dumps(
        {
            "type": error.type.value,
            "code": error.code,
            "message": error.message,
            "retry_count": error.retry_count,
            "last_retry_at": _iso(error.last_retry_at),
            "diagnostic": error.diagnostic,
        },
        default=str,
    )


def _error_from_json(raw: Optional[str]) -> Optional[SessionError]:
    if not raw:
        return None
    data = json.loads(raw)
    return SessionError(
        type=ErrorType(data["type"]),
        code=data["code"],
        message=data["message"],
        retry_count=int(data.get("retry_count", 0)),
        last_retry_at=_parse_iso(data.get("last_retry_at")),
        diagnostic=data.get("diagnostic"),
    )


def _known_fields(raw: str, names: set[str]) -> dict[str, Any]:
    data = json.loads(raw) if raw else {}
    return {key: value for key, value in data.items() if key in names}


def _row_to_lock(row: sqlite3.Row) -> ResourceLock:
    return ResourceLock(
        id=row["id"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        owner_id=row["owner_id"],
        acquired_at=from_epoch_ms(row["acquired_at_ms"]),
        expires_at=from_epoch_ms(row["expires_at_ms"]),
        renewal_token=row["renewal_token"],
        timeout_ms=int(row["timeout_ms"]),
        renewal_count=int(row["renewal_count"]),
    )


def _row_to_session(row: sqlite3.Row) -> ScanSession:
    return ScanSession(
        id=row["id"],
        owner_id=row["owner_id"],
        run_type=RunType(row["run_type"]),
        status=ScanState(row["status"]),
        started_at=_parse_iso(row["started_at"]),
        updated_at=_parse_iso(row["updated_at"]),
        checkpoint=Checkpoint(**_known_fields(row["checkpoint_json"], Checkpoint.field_names())),
        stats=SessionStats(**_known_fields(row["stats_json"], SessionStats.field_names())),
        error=_error_from_json(row["error_json"]),
        retry_count=int(row["retry_count"]),
        completed_at=_parse_iso(row["completed_at"]),
    )


def _row_to_evidence(row: sqlite3.Row) -> EvidenceRecord:
    return EvidenceRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        received_at=_parse_iso(row["received_at"]),
        message_id=row["message_id"],
        merchant_text=row["merchant_text"],
        merchant_key=row["merchant_key"],
        amount=row["amount"],
        currency=row["currency"],
        cadence_hint=Cadence(row["cadence_hint"]) if row["cadence_hint"] else None,
        receipt_kind=ReceiptKind(row["receipt_kind"]),
        subject=row["subject"],
        body=row["body"],
        parsed=bool(row["parsed"]),
        candidate_id=row["candidate_id"],
        subscription_id=row["subscription_id"],
    )


def _row_to_candidate(row: sqlite3.Row) -> DetectionCandidate:
    return DetectionCandidate(
        id=row["id"],
        owner_id=row["owner_id"],
        merchant_key=row["merchant_key"],
        proposed_name=row["proposed_name"],
        amount=float(row["amount"]),
        currency=row["currency"],
        cadence=Cadence(row["cadence"]),
        next_billing=_parse_iso(row["next_billing"]),
        confidence=float(row["confidence"]),
        detection_reason=row["detection_reason"],
        created_at=_parse_iso(row["created_at"]),
        updated_at=_parse_iso(row["updated_at"]),
        status=CandidateStatus(row["status"]),
        evidence_ids=list(json.loads(row["evidence_ids_json"])),
        reviewed_at=_parse_iso(row["reviewed_at"]),
    )


class SQLiteStorage:
    """SQLite implementation of the lock, session, evidence and candidate stores."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5_000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout_ms / 1000

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables and indexes if they do not exist."""

        with self._transaction() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # Locks

    def insert_lock_if_free(self, lock: ResourceLock) -> bool:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM resource_locks WHERE resource_type = ? AND resource_id = ? AND expires_at_ms <= ?",
                (lock.resource_type, lock.resource_id, to_epoch_ms(lock.acquired_at)),
            )
            live = conn.execute(
                "SELECT 1 FROM resource_locks WHERE resource_type = ? AND resource_id = ?",
                (lock.resource_type, lock.resource_id),
            ).fetchone()
            if live is not None:
                return False
            conn.execute(
                """
                INSERT INTO resource_locks (
                    id, resource_type, resource_id, owner_id, acquired_at_ms,
                    expires_at_ms, renewal_token, timeout_ms, renewal_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    lock.id,
                    lock.resource_type,
                    lock.resource_id,
                    lock.owner_id,
                    to_epoch_ms(lock.acquired_at),
                    to_epoch_ms(lock.expires_at),
                    lock.renewal_token,
                    lock.timeout_ms,
                    lock.renewal_count,
                ),
            )
            return True

    def get_lock(self, lock_id: str) -> Optional[ResourceLock]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM resource_locks WHERE id = ?", (lock_id,)).fetchone()
        return _row_to_lock(row) if row else None

    def find_live_lock(self, resource_type: str, resource_id: str, now: datetime) -> Optional[ResourceLock]:
        with self._read() as conn:
            row = conn.execute(
                """
                SELECT * FROM resource_locks
                WHERE resource_type = ? AND resource_id = ? AND expires_at_ms > ?
                """,
                (resource_type, resource_id, to_epoch_ms(now)),
            ).fetchone()
        return _row_to_lock(row) if row else None

    def extend_lock(self, lock_id: str, renewal_token: str, now: datetime, expires_at: datetime) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE resource_locks
                SET expires_at_ms = ?, renewal_count = renewal_count + 1
                WHERE id = ? AND renewal_token = ? AND expires_at_ms > ?
                """,
                (to_epoch_ms(expires_at), lock_id, renewal_token, to_epoch_ms(now)),
            )
            return cur.rowcount == 1

    def delete_lock(self, lock_id: str, renewal_token: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM resource_locks WHERE id = ? AND renewal_token = ?",
                (lock_id, renewal_token),
            )
            return cur.rowcount == 1

    def delete_expired_locks(self, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM resource_locks WHERE expires_at_ms <= ?", (to_epoch_ms(now),))
            return cur.rowcount

    def delete_owner_locks(self, owner_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM resource_locks WHERE owner_id = ?", (owner_id,))
            return cur.rowcount

    # Sessions

    def insert_session(self, session: ScanSession) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO scan_sessions (
                    id, owner_id, run_type, status, checkpoint_json, stats_json,
                    error_json, retry_count, started_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.owner_id,
                    session.run_type.value,
                    session.status.value,
                    json.dumps(asdict(session.checkpoint)),
                    json.dumps(asdict(session.stats)),
                    _error_to_json(session.error),
                    session.retry_count,
                    _iso(session.started_at),
                    _iso(session.updated_at),
                    _iso(session.completed_at),
                ),
            )

    def get_session(self, session_id: str) -> Optional[ScanSession]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM scan_sessions WHERE id = ?", (session_id,)).fetchone()
        return _row_to_session(row) if row else None

    def compare_and_set_session(self, session: ScanSession, expected_status: ScanState) -> bool:
        """Write the lifecycle columns only if the stored status is unchanged.

        Checkpoint and stats are left alone; they have their own writers.
        """

        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE scan_sessions
                SET status = ?, error_json = ?, retry_count = ?, updated_at = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    session.status.value,
                    _error_to_json(session.error),
                    session.retry_count,
                    _iso(session.updated_at),
                    _iso(session.completed_at),
                    session.id,
                    expected_status.value,
                ),
            )
            return cur.rowcount == 1

    def save_checkpoint(self, session_id: str, checkpoint: Checkpoint, updated_at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE scan_sessions SET checkpoint_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(asdict(checkpoint)), _iso(updated_at), session_id),
            )

    def save_stats(self, session_id: str, stats: SessionStats, updated_at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE scan_sessions SET stats_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(asdict(stats)), _iso(updated_at), session_id),
            )

    def find_active_session(self, owner_id: str) -> Optional[ScanSession]:
        with self._read() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM scan_sessions
                WHERE owner_id = ? AND status NOT IN (?, ?)
                {_SESSION_ORDER} LIMIT 1
                """,
                (owner_id, ScanState.COMPLETE.value, ScanState.FAILED.value),
            ).fetchone()
        return _row_to_session(row) if row else None

    def latest_session(self, owner_id: str) -> Optional[ScanSession]:
        with self._read() as conn:
            row = conn.execute(
                f"SELECT * FROM scan_sessions WHERE owner_id = ? {_SESSION_ORDER} LIMIT 1",
                (owner_id,),
            ).fetchone()
        return _row_to_session(row) if row else None

    def has_completed_session(self, owner_id: str, run_type: RunType) -> bool:
        with self._read() as conn:
            row = conn.execute(
                "SELECT 1 FROM scan_sessions WHERE owner_id = ? AND run_type = ? AND status = ? LIMIT 1",
                (owner_id, run_type.value, ScanState.COMPLETE.value),
            ).fetchone()
        return row is not None

    def delete_sessions_before(self, cutoff: datetime, statuses: Iterable[ScanState]) -> int:
        values = [status.value for status in statuses]
        if not values:
            return 0
        with self._transaction() as conn:
            cur = conn.execute(
                f"DELETE FROM scan_sessions WHERE updated_at < ? AND status IN ({_placeholders(len(values))})",
                (_iso(cutoff), *values),
            )
            return cur.rowcount

    def log_error(self, session_id: str, metadata: ErrorMetadata, logged_at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO error_log (session_id, type, code, message, context_json, stack_trace, logged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    metadata.type.value,
                    metadata.code,
                    metadata.message,
                    json.dumps(metadata.context, default=str),
                    metadata.stack_trace,
                    _iso(logged_at),
                ),
            )

    def list_errors(self, session_id: str) -> list[dict[str, Any]]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM error_log WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # Evidence

    def upsert_evidence(self, records: Sequence[EvidenceRecord]) -> int:
        inserted = 0
        with self._transaction() as conn:
            for record in records:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO evidence (
                        id, owner_id, message_id, merchant_text, merchant_key, amount,
                        currency, cadence_hint, receipt_kind, received_at, subject, body,
                        parsed, candidate_id, subscription_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.owner_id,
                        record.message_id,
                        record.merchant_text,
                        record.merchant_key,
                        record.amount,
                        record.currency,
                        record.cadence_hint.value if record.cadence_hint else None,
                        record.receipt_kind.value,
                        _iso(record.received_at),
                        record.subject,
                        record.body,
                        int(record.parsed),
                        record.candidate_id,
                        record.subscription_id,
                    ),
                )
                inserted += cur.rowcount
        return inserted

    def list_unparsed(self, owner_id: str, limit: int) -> list[EvidenceRecord]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evidence
                WHERE owner_id = ? AND parsed = 0
                ORDER BY received_at, id
                LIMIT ?
                """,
                (owner_id, limit),
            ).fetchall()
        return [_row_to_evidence(row) for row in rows]

    def count_unparsed(self, owner_id: str) -> int:
        with self._read() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM evidence WHERE owner_id = ? AND parsed = 0",
                (owner_id,),
            ).fetchone()
        return int(row["total"])

    def save_parsed(self, records: Sequence[EvidenceRecord]) -> None:
        with self._transaction() as conn:
            for record in records:
                conn.execute(
                    """
                    UPDATE evidence
                    SET merchant_text = ?, merchant_key = ?, amount = ?, currency = ?,
                        cadence_hint = ?, receipt_kind = ?, parsed = 1, parse_failed = 0
                    WHERE id = ?
                    """,
                    (
                        record.merchant_text,
                        record.merchant_key,
                        record.amount,
                        record.currency,
                        record.cadence_hint.value if record.cadence_hint else None,
                        record.receipt_kind.value,
                        record.id,
                    ),
                )

    def mark_parse_failed(self, evidence_ids: Sequence[str]) -> None:
        if not evidence_ids:
            return
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE evidence SET parsed = 1, parse_failed = 1 WHERE id IN ({_placeholders(len(evidence_ids))})",
                tuple(evidence_ids),
            )

    def list_detection_evidence(self, owner_id: str) -> list[EvidenceRecord]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evidence
                WHERE owner_id = ? AND parsed = 1 AND parse_failed = 0
                  AND (merchant_text IS NOT NULL OR merchant_key IS NOT NULL)
                ORDER BY received_at, id
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_evidence(row) for row in rows]

    def list_evidence(self, owner_id: str) -> list[EvidenceRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM evidence WHERE owner_id = ? ORDER BY received_at, id",
                (owner_id,),
            ).fetchall()
        return [_row_to_evidence(row) for row in rows]

    def link_evidence_to_subscription(self, evidence_ids: Sequence[str], subscription_id: str) -> int:
        if not evidence_ids:
            return 0
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE evidence SET subscription_id = ? WHERE id IN ({_placeholders(len(evidence_ids))})",
                (subscription_id, *evidence_ids),
            )
            return cur.rowcount

    # Candidates

    def list_candidates(
        self, owner_id: str, statuses: Optional[Iterable[CandidateStatus]] = None
    ) -> list[DetectionCandidate]:
        query = "SELECT * FROM candidates WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" AND status IN ({_placeholders(len(values))})"
            params.extend(values)
        query += " ORDER BY merchant_key, created_at, id"
        with self._read() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_candidate(row) for row in rows]

    def get_candidate(self, candidate_id: str) -> Optional[DetectionCandidate]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM candidates WHERE id = ?", (candidate_id,)).fetchone()
        return _row_to_candidate(row) if row else None

    def save_candidate(self, candidate: DetectionCandidate) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO candidates (
                    id, owner_id, merchant_key, proposed_name, amount, currency, cadence,
                    next_billing, confidence, detection_reason, status, evidence_ids_json,
                    created_at, updated_at, reviewed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    proposed_name = excluded.proposed_name,
                    amount = excluded.amount,
                    currency = excluded.currency,
                    cadence = excluded.cadence,
                    next_billing = excluded.next_billing,
                    confidence = excluded.confidence,
                    detection_reason = excluded.detection_reason,
                    status = excluded.status,
                    evidence_ids_json = excluded.evidence_ids_json,
                    updated_at = excluded.updated_at,
                    reviewed_at = excluded.reviewed_at
                """,
                (
                    candidate.id,
                    candidate.owner_id,
                    candidate.merchant_key,
                    candidate.proposed_name,
                    candidate.amount,
                    candidate.currency,
                    candidate.cadence.value,
                    _iso(candidate.next_billing),
                    candidate.confidence,
                    candidate.detection_reason,
                    candidate.status.value,
                    json.dumps(candidate.evidence_ids),
                    _iso(candidate.created_at),
                    _iso(candidate.updated_at),
                    _iso(candidate.reviewed_at),
                ),
            )
            if candidate.evidence_ids:
                conn.execute(
                    f"""
                    UPDATE evidence SET candidate_id = ?
                    WHERE owner_id = ? AND id IN ({_placeholders(len(candidate.evidence_ids))})
                    """,
                    (candidate.id, candidate.owner_id, *candidate.evidence_ids),
                )

    def set_candidate_status(self, candidate_id: str, status: CandidateStatus, reviewed_at: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE candidates SET status = ?, reviewed_at = ?, updated_at = ? WHERE id = ?",
                (status.value, _iso(reviewed_at), _iso(reviewed_at), candidate_id),
            )

    # Confirmed subscriptions

    def add_confirmed(self, subscription: ConfirmedSubscription) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO confirmed_subscriptions (id, owner_id, name) VALUES (?, ?, ?)",
                (subscription.id, subscription.owner_id, subscription.name),
            )

    def list_confirmed(self, owner_id: str) -> list[ConfirmedSubscription]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM confirmed_subscriptions WHERE owner_id = ? ORDER BY name, id",
                (owner_id,),
            ).fetchall()
        return [ConfirmedSubscription(id=row["id"], owner_id=row["owner_id"], name=row["name"]) for row in rows]

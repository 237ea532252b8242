"""
Relay Session Store - SQLite persistence for the rendezvous server

Provides storage for:
- Sync sessions (pairing code, offer, answer, candidates, status)
- Expiry tracking (expired rows are invisible to every read)

Only negotiation metadata is stored here. Transferred records never touch
the relay.
"""

from __future__ import annotations

import json
import sqlite3
import logging
import uuid
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional

from medsync.errors import ErrorType, RelayError, SessionAlreadyAnsweredError, SessionNotFoundError
from medsync.relay.models import SessionStatus, SyncSession

logger = logging.getLogger(__name__)


_COLUMNS = "id, pairing_code, offer, answer, ice_candidates, status, created_at, expires_at"


def _iso(value: datetime) -> str:
    # Fixed width so timestamps compare correctly as text
    return value.isoformat(timespec="microseconds")


class SessionStore:
    """SQLite-backed sync session table"""

    def __init__(self, db_path: Path, ttl_seconds: float = 300):
        self.db_path = Path(db_path)
        self.ttl_seconds = ttl_seconds
        self.init_db()

    # ===== Database Initialization =====

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """
        Create the sync_sessions table if it doesn't exist.

        Safe to call multiple times (idempotent).
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_sessions (
                    id TEXT PRIMARY KEY,
                    pairing_code TEXT NOT NULL,
                    offer TEXT,
                    answer TEXT,
                    ice_candidates TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_sessions_code ON sync_sessions(pairing_code)"
            )
            conn.commit()

    # ===== Row mapping =====

    @staticmethod
    def _now() -> str:
        return _iso(datetime.now(UTC))

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SyncSession:
        return SyncSession(
            id=row["id"],
            pairing_code=row["pairing_code"],
            offer=json.loads(row["offer"]) if row["offer"] else None,
            answer=json.loads(row["answer"]) if row["answer"] else None,
            ice_candidates=json.loads(row["ice_candidates"] or "[]"),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )

    def _fetch_live(self, conn: sqlite3.Connection, session_id: str) -> SyncSession:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM sync_sessions WHERE id = ? AND expires_at > ?",
            (session_id, self._now())
        ).fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    # ===== CRUD operations =====

    def create(self, pairing_code: str, offer: Dict[str, Any]) -> SyncSession:
        """
        Insert a new session in status 'waiting'.

        Raises:
            RelayError: the pairing code is bound to another live session
        """
        now = datetime.now(UTC)
        session = SyncSession(
            id=str(uuid.uuid4()),
            pairing_code=pairing_code,
            offer=offer,
            status=SessionStatus.WAITING.value,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            clash = conn.execute(
                "SELECT 1 FROM sync_sessions WHERE pairing_code = ? AND expires_at > ?",
                (pairing_code, _iso(now))
            ).fetchone()
            if clash:
                raise RelayError(
                    "Pairing code already in use",
                    error_type=ErrorType.PAIRING_CODE_IN_USE,
                    details={"code": pairing_code},
                )
            conn.execute(
                f"INSERT INTO sync_sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.pairing_code,
                    json.dumps(session.offer),
                    None,
                    "[]",
                    session.status,
                    _iso(session.created_at),
                    _iso(session.expires_at),
                )
            )
            conn.commit()

        logger.info(f"Sync session {session.id} created (expires {session.expires_at.isoformat()})")
        return session

    def get(self, session_id: str) -> SyncSession:
        with self._connect() as conn:
            return self._fetch_live(conn, session_id)

    def find_by_code(self, pairing_code: str) -> SyncSession:
        with self._connect() as conn:
            row = conn.execute(
                f"""SELECT {_COLUMNS} FROM sync_sessions
                    WHERE pairing_code = ? AND expires_at > ?
                    ORDER BY created_at DESC LIMIT 1""",
                (pairing_code, self._now())
            ).fetchone()
        if row is None:
            raise SessionNotFoundError(pairing_code)
        return self._row_to_session(row)

    def update(
        self,
        session_id: str,
        answer: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
        ice_candidates: Optional[List[Dict[str, Any]]] = None,
    ) -> SyncSession:
        """Overwrite the provided fields of a live session. The answer is set once."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            session = self._fetch_live(conn, session_id)
            if answer is not None:
                if session.answer is not None:
                    raise SessionAlreadyAnsweredError(session_id)
                session.answer = answer
            if status is not None:
                session.status = SessionStatus(status).value
            if ice_candidates is not None:
                session.ice_candidates = list(ice_candidates)
            conn.execute(
                "UPDATE sync_sessions SET answer = ?, status = ?, ice_candidates = ? WHERE id = ?",
                (
                    json.dumps(session.answer) if session.answer is not None else None,
                    session.status,
                    json.dumps(session.ice_candidates),
                    session_id,
                )
            )
            conn.commit()
        return session

    def append_candidates(self, session_id: str, candidates: List[Dict[str, Any]]) -> SyncSession:
        """Append to the candidate list inside one write transaction"""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            session = self._fetch_live(conn, session_id)
            session.ice_candidates.extend(candidates)
            conn.execute(
                "UPDATE sync_sessions SET ice_candidates = ? WHERE id = ?",
                (json.dumps(session.ice_candidates), session_id)
            )
            conn.commit()
        return session

    def delete(self, session_id: str) -> bool:
        """
        Delete a session.

        Returns:
            True if a live session was deleted, False if not found/expired
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_sessions WHERE id = ? AND expires_at > ?",
                (session_id, self._now())
            )
            conn.commit()
            return cursor.rowcount > 0

    # ===== Maintenance =====

    def purge_expired(self) -> int:
        """
        Remove expired sessions.

        Returns:
            Number of sessions removed
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_sessions WHERE expires_at <= ?",
                (self._now(),)
            )
            conn.commit()
            return cursor.rowcount

    def count_live(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM sync_sessions WHERE expires_at > ?",
                (self._now(),)
            )
            return cursor.fetchone()[0]

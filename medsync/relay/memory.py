"""
In-memory session relay

Single-process relay used by tests and local demos. Change notifications
are delivered on the event loop after the write completes, like a realtime
push from a remote backend.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from medsync.errors import ErrorType, RelayError, SessionAlreadyAnsweredError, SessionNotFoundError
from medsync.relay.base import SessionCallback, SessionRelay, Subscription
from medsync.relay.models import SessionStatus, SyncSession

logger = logging.getLogger(__name__)


class InMemorySessionRelay(SessionRelay):
    """Dict-backed relay with per-session subscriber lists"""

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, SyncSession] = {}
        self._subscribers: Dict[str, List[SessionCallback]] = defaultdict(list)

    # ===== Helpers =====

    def _live(self, session_id: str) -> SyncSession:
        session = self._sessions.get(session_id)
        if session is None or session.is_expired():
            raise SessionNotFoundError(session_id)
        return session

    def _notify(self, session: SyncSession) -> None:
        callbacks = list(self._subscribers.get(session.id, []))
        if not callbacks:
            return
        loop = asyncio.get_running_loop()
        for callback in callbacks:
            loop.call_soon(self._deliver, session.id, callback, session.model_copy(deep=True))

    def _deliver(self, session_id: str, callback: SessionCallback, session: SyncSession) -> None:
        # Subscriber may have unsubscribed between scheduling and delivery
        if callback in self._subscribers.get(session_id, []):
            callback(session)

    # ===== SessionRelay =====

    async def create_session(self, pairing_code: str, offer: Dict[str, Any]) -> SyncSession:
        for existing in self._sessions.values():
            if existing.pairing_code == pairing_code and not existing.is_expired():
                raise RelayError(
                    "Pairing code already in use",
                    error_type=ErrorType.PAIRING_CODE_IN_USE,
                    details={"code": pairing_code},
                )

        now = datetime.now(UTC)
        session = SyncSession(
            id=str(uuid.uuid4()),
            pairing_code=pairing_code,
            offer=offer,
            status=SessionStatus.WAITING.value,
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self._sessions[session.id] = session
        logger.debug(f"Session {session.id} created for code {pairing_code}")
        return session.model_copy(deep=True)

    async def find_session_by_code(self, pairing_code: str) -> SyncSession:
        for session in self._sessions.values():
            if session.pairing_code == pairing_code and not session.is_expired():
                return session.model_copy(deep=True)
        raise SessionNotFoundError(pairing_code)

    async def get_session(self, session_id: str) -> SyncSession:
        return self._live(session_id).model_copy(deep=True)

    async def update_session(
        self,
        session_id: str,
        answer: Optional[Dict[str, Any]] = None,
        status: Optional[SessionStatus] = None,
        ice_candidates: Optional[List[Dict[str, Any]]] = None,
    ) -> SyncSession:
        session = self._live(session_id)
        if answer is not None:
            if session.answer is not None:
                raise SessionAlreadyAnsweredError(session_id)
            session.answer = answer
        if status is not None:
            session.status = SessionStatus(status).value
        if ice_candidates is not None:
            session.ice_candidates = list(ice_candidates)
        self._notify(session)
        return session.model_copy(deep=True)

    async def add_candidates(self, session_id: str, candidates: List[Dict[str, Any]]) -> SyncSession:
        session = self._live(session_id)
        session.ice_candidates.extend(candidates)
        self._notify(session)
        return session.model_copy(deep=True)

    async def delete_session(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is None:
            raise SessionNotFoundError(session_id)
        self._subscribers.pop(session_id, None)

    def subscribe(self, session_id: str, on_change: SessionCallback) -> Subscription:
        self._subscribers[session_id].append(on_change)

        def _remove() -> None:
            callbacks = self._subscribers.get(session_id)
            if callbacks and on_change in callbacks:
                callbacks.remove(on_change)

        return Subscription(session_id, on_close=_remove)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

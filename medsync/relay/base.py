"""
Session Relay - client contract

Both devices talk to the relay through this interface. Every failure is
raised as RelayError (SessionNotFoundError for missing/expired sessions);
nothing is retried here.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from medsync.relay.models import SessionStatus, SyncSession

logger = logging.getLogger(__name__)

SessionCallback = Callable[[SyncSession], None]


class Subscription:
    """Handle for a realtime update subscription. close() is idempotent."""

    def __init__(self, session_id: str, on_close: Optional[Callable[[], None]] = None):
        self.session_id = session_id
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()
        logger.debug(f"Subscription to {self.session_id} closed")


class SessionRelay(ABC):
    """Key-value session store with change notifications"""

    @abstractmethod
    async def create_session(self, pairing_code: str, offer: Dict[str, Any]) -> SyncSession:
        """Insert a new session in status 'waiting' with a relay-assigned expiry"""

    @abstractmethod
    async def find_session_by_code(self, pairing_code: str) -> SyncSession:
        """Live session for a pairing code, or SessionNotFoundError"""

    @abstractmethod
    async def get_session(self, session_id: str) -> SyncSession:
        """Live session by id, or SessionNotFoundError"""

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        answer: Optional[Dict[str, Any]] = None,
        status: Optional[SessionStatus] = None,
        ice_candidates: Optional[List[Dict[str, Any]]] = None,
    ) -> SyncSession:
        """Overwrite the given fields. A second answer raises SessionAlreadyAnsweredError."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Remove a session"""

    @abstractmethod
    def subscribe(self, session_id: str, on_change: SessionCallback) -> Subscription:
        """Deliver every later write to on_change (best effort)"""

    async def add_candidates(self, session_id: str, candidates: List[Dict[str, Any]]) -> SyncSession:
        """
        Append candidates to the session's list.

        Read-modify-write of the full list so the other side's entries are
        kept. Relays that can append atomically override this.
        """
        session = await self.get_session(session_id)
        merged = session.ice_candidates + list(candidates)
        return await self.update_session(session_id, ice_candidates=merged)

    async def close(self) -> None:
        """Release client resources"""

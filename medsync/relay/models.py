"""
Session Relay - Pydantic Models

SyncSession is the record both devices read and write while negotiating.
Request models are used by the rendezvous server routes.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    WAITING = "waiting"
    CONNECTED = "connected"
    COMPLETED = "completed"


class PeerRole(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"

    @property
    def peer(self) -> "PeerRole":
        return PeerRole.RECEIVER if self is PeerRole.SENDER else PeerRole.SENDER


class SyncSession(BaseModel):
    """Relay-held negotiation record: one offer, at most one answer"""
    id: str
    pairing_code: str
    offer: Optional[Dict[str, Any]] = None
    answer: Optional[Dict[str, Any]] = None
    ice_candidates: List[Dict[str, Any]] = Field(default_factory=list)
    status: str = SessionStatus.WAITING.value
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def candidates_from(self, role: PeerRole) -> List[Dict[str, Any]]:
        """Candidates published by one side, in publish order"""
        return [c for c in self.ice_candidates if c.get("origin") == role.value]


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateSessionRequest(BaseModel):
    pairing_code: str
    offer: Dict[str, Any]


class UpdateSessionRequest(BaseModel):
    answer: Optional[Dict[str, Any]] = None
    status: Optional[SessionStatus] = None
    ice_candidates: Optional[List[Dict[str, Any]]] = None


class AddCandidatesRequest(BaseModel):
    candidates: List[Dict[str, Any]]


class DeleteSessionResponse(BaseModel):
    status: str
    session_id: str

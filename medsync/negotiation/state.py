"""
Negotiation State

Sync status machine and the per-session idempotency record used while the
two devices exchange offer, answer and candidates.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SyncStatus(str, Enum):
    """Status of a transfer as shown to the user"""
    IDLE = "idle"
    GENERATING_CODE = "generating-code"
    WAITING = "waiting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.ERROR)


# Forward order of the happy path; status never moves backwards
STATUS_ORDER = {
    SyncStatus.IDLE: 0,
    SyncStatus.GENERATING_CODE: 1,
    SyncStatus.WAITING: 2,
    SyncStatus.CONNECTING: 3,
    SyncStatus.CONNECTED: 4,
    SyncStatus.TRANSFERRING: 5,
    SyncStatus.COMPLETED: 6,
}


@dataclass
class NegotiationState:
    """
    Idempotency state for one relay session.

    answer_applied guards against applying the answer twice when both the
    realtime push and the poll observe it. remote_candidates_applied counts
    how many of the peer's candidates were consumed, so every observation
    only applies the new suffix. Local candidates are buffered until
    gathering completes and published in one batch.
    """
    session_id: Optional[str] = None
    answer_applied: bool = False
    remote_candidates_applied: int = 0
    local_candidates: List[Dict[str, Any]] = field(default_factory=list)
    local_candidates_published: int = 0
    gathering_complete: bool = False

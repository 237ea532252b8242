"""
Session Relay Package

Brokers offer/answer/candidate exchange between two devices.

Modules:
- models: SyncSession, SessionStatus, PeerRole, request models
- base: SessionRelay contract, Subscription
- memory: InMemorySessionRelay (single process)
- http_client: HttpSessionRelay (talks to the rendezvous server)
- store: SessionStore (SQLite persistence for the server)
- routes / app: FastAPI rendezvous server
"""

from medsync.relay.models import (
    SyncSession,
    SessionStatus,
    PeerRole,
    CreateSessionRequest,
    UpdateSessionRequest,
    AddCandidatesRequest,
)

from medsync.relay.base import (
    SessionRelay,
    SessionCallback,
    Subscription,
)

from medsync.relay.memory import InMemorySessionRelay
from medsync.relay.http_client import HttpSessionRelay
from medsync.relay.store import SessionStore

__all__ = [
    # Models
    "SyncSession",
    "SessionStatus",
    "PeerRole",
    "CreateSessionRequest",
    "UpdateSessionRequest",
    "AddCandidatesRequest",
    # Client contract
    "SessionRelay",
    "SessionCallback",
    "Subscription",
    # Implementations
    "InMemorySessionRelay",
    "HttpSessionRelay",
    "SessionStore",
]

"""
Negotiation Package

Establishes the direct peer connection between the two devices.

Modules:
- state: SyncStatus, NegotiationState
- transport: PeerTransport / PeerDataChannel and the aiortc adapter
- negotiator: SenderNegotiator, ReceiverNegotiator
"""

from medsync.negotiation.state import (
    SyncStatus,
    STATUS_ORDER,
    NegotiationState,
)

from medsync.negotiation.transport import (
    PeerTransport,
    PeerDataChannel,
    AiortcPeerTransport,
    create_aiortc_transport,
)

from medsync.negotiation.negotiator import (
    ConnectionNegotiator,
    SenderNegotiator,
    ReceiverNegotiator,
    NegotiationCancelled,
)

__all__ = [
    "SyncStatus",
    "STATUS_ORDER",
    "NegotiationState",
    "PeerTransport",
    "PeerDataChannel",
    "AiortcPeerTransport",
    "create_aiortc_transport",
    "ConnectionNegotiator",
    "SenderNegotiator",
    "ReceiverNegotiator",
    "NegotiationCancelled",
]

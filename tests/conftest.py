"""
Shared fixtures for MedSync tests

FakeNetwork hands out loopback transports: two transports that exchanged
offer/answer and at least one candidate each become "connected", and the
sender's data channels show up on the receiver as "datachannel" events.
"""

import asyncio
import itertools
from datetime import datetime, UTC
from typing import Dict, List, Optional

import pytest

from medsync.config import MedSyncSettings
from medsync.negotiation.transport import PeerDataChannel, PeerTransport
from medsync.records import MedicationRecord
from medsync.relay.memory import InMemorySessionRelay


class FakeDataChannel(PeerDataChannel):
    """In-process data channel; send() delivers to the linked remote channel"""

    def __init__(self, label: str):
        super().__init__()
        self._label = label
        self._state = "connecting"
        self.remote: Optional["FakeDataChannel"] = None
        self.sent: List[str] = []

    @property
    def label(self) -> str:
        return self._label

    @property
    def ready_state(self) -> str:
        return self._state

    def send(self, data: str) -> None:
        if self._state != "open":
            raise RuntimeError(f"Channel is {self._state}")
        self.sent.append(data)
        asyncio.get_running_loop().call_soon(self.remote._deliver, data)

    def _deliver(self, data: str) -> None:
        if self._state == "open":
            self.emit("message", data)

    def open(self) -> None:
        self._state = "open"
        self.emit("open")

    def close(self) -> None:
        if self._state == "closed":
            return
        self._state = "closed"
        self.emit("close")
        if self.remote is not None and self.remote.ready_state != "closed":
            asyncio.get_running_loop().call_soon(self.remote.close)


class FakePeerTransport(PeerTransport):
    """Loopback peer connection registered on a FakeNetwork"""

    def __init__(self, network: "FakeNetwork", candidate_count: int = 2):
        super().__init__()
        self.network = network
        self.name = f"peer-{next(network.ids)}"
        self.candidate_count = candidate_count
        self.channels: List[FakeDataChannel] = []
        self.peer: Optional["FakePeerTransport"] = None
        self.local: Optional[Dict] = None
        self.remote: Optional[Dict] = None
        self.remote_description_calls = 0
        self.remote_candidates: List[Dict] = []
        self.state = "new"
        self.closed = False

    def create_data_channel(self, label: str, ordered: bool = True) -> PeerDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    async def create_offer(self):
        return {"type": "offer", "sdp": f"offer-{self.name}"}

    async def create_answer(self):
        return {"type": "answer", "sdp": f"answer-{self.name}"}

    async def set_local_description(self, description) -> None:
        self.local = dict(description)
        self.network.register(description["sdp"], self)
        for index in range(self.candidate_count):
            self.emit("icecandidate", {
                "candidate": f"candidate:{index} 1 udp 1 10.0.0.{index} 5000 typ host {self.name}",
                "sdpMid": "0",
                "sdpMLineIndex": 0,
            })
        asyncio.get_running_loop().call_soon(self._gathering_done)

    def _gathering_done(self) -> None:
        if not self.closed:
            self.emit("icegatheringcomplete")

    async def set_remote_description(self, description) -> None:
        self.remote_description_calls += 1
        self.remote = dict(description)
        self.peer = self.network.lookup(description["sdp"])
        self.network.maybe_connect(self)

    @property
    def local_description(self):
        return self.local

    @property
    def connection_state(self) -> str:
        return self.state

    async def add_ice_candidate(self, candidate) -> None:
        self.remote_candidates.append(candidate)
        self.network.maybe_connect(self)

    async def close(self) -> None:
        self.closed = True
        self.state = "closed"
        for channel in self.channels:
            channel.close()

    @property
    def ready(self) -> bool:
        return (
            not self.closed
            and self.remote is not None
            and (self.candidate_count == 0 or bool(self.remote_candidates))
        )


class FakeNetwork:
    """Registry pairing transports by the SDP they published"""

    def __init__(self):
        self.ids = itertools.count(1)
        self.by_sdp: Dict[str, FakePeerTransport] = {}
        self.transports: List[FakePeerTransport] = []
        self.blocked = False

    def transport(self) -> FakePeerTransport:
        transport = FakePeerTransport(self)
        self.transports.append(transport)
        return transport

    def register(self, sdp: str, transport: FakePeerTransport) -> None:
        self.by_sdp[sdp] = transport

    def lookup(self, sdp: str) -> Optional[FakePeerTransport]:
        return self.by_sdp.get(sdp)

    def maybe_connect(self, transport: FakePeerTransport) -> None:
        peer = transport.peer
        if self.blocked or peer is None or peer.peer is not transport:
            return
        if transport.state == "connected" or not (transport.ready and peer.ready):
            return
        transport.state = peer.state = "connected"
        asyncio.get_running_loop().call_soon(self._connect, transport, peer)

    def _connect(self, a: FakePeerTransport, b: FakePeerTransport) -> None:
        a.emit("connectionstatechange", "connected")
        b.emit("connectionstatechange", "connected")

        offerer, answerer = (a, b) if a.channels else (b, a)
        for channel in list(offerer.channels):
            remote = FakeDataChannel(channel.label)
            channel.remote, remote.remote = remote, channel
            answerer.channels.append(remote)
            remote._state = "open"
            answerer.emit("datachannel", remote)
            channel.open()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def fast_settings(tmp_path):
    return MedSyncSettings(
        environment="testing",
        data_dir=tmp_path / "data",
        poll_interval_seconds=0.05,
        countdown_interval_seconds=0.05,
        settle_delay_seconds=0,
        sender_grace_seconds=0.05,
        receiver_grace_seconds=0.02,
    )


@pytest.fixture
def relay():
    return InMemorySessionRelay(ttl_seconds=300)


@pytest.fixture
def sample_records():
    return [
        MedicationRecord(
            id="med-1",
            name="Ibuprofen 400",
            pzn="01016144",
            current_amount=20,
            daily_dosage=2,
            interval="daily",
            created_at=datetime(2024, 3, 1, 8, 30, tzinfo=UTC),
        ),
        MedicationRecord(
            id="med-2",
            name="Vitamin D3",
            current_amount=90,
            daily_dosage=1,
            interval="weekly",
            personal_notes="with breakfast",
            created_at=datetime(2024, 3, 2, 9, 0, tzinfo=UTC),
        ),
    ]


@pytest.fixture
def data_channel():
    return FakeDataChannel("medications")

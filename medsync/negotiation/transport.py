"""
Peer Transport - interactive connectivity establishment behind one interface

PeerTransport: one peer connection (offer/answer, candidates, state events)
PeerDataChannel: reliable ordered message channel
AiortcPeerTransport / AiortcDataChannel: aiortc implementations

Events are pyee emitters, the same mechanism aiortc uses:

PeerTransport
- "icecandidate" (candidate dict: candidate, sdpMid, sdpMLineIndex)
- "icegatheringcomplete" ()
- "connectionstatechange" (state string)
- "datachannel" (PeerDataChannel opened by the remote side)

PeerDataChannel
- "open" (), "message" (str), "close" (), "error" (exception)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

logger = logging.getLogger(__name__)

Description = Dict[str, Any]
Candidate = Dict[str, Any]


class PeerDataChannel(AsyncIOEventEmitter, ABC):
    """Reliable, ordered message channel between the two peers"""

    @property
    @abstractmethod
    def label(self) -> str: ...

    @property
    @abstractmethod
    def ready_state(self) -> str: ...

    @abstractmethod
    def send(self, data: str) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class PeerTransport(AsyncIOEventEmitter, ABC):
    """One peer connection"""

    @abstractmethod
    def create_data_channel(self, label: str, ordered: bool = True) -> PeerDataChannel: ...

    @abstractmethod
    async def create_offer(self) -> Description: ...

    @abstractmethod
    async def create_answer(self) -> Description: ...

    @abstractmethod
    async def set_local_description(self, description: Description) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: Description) -> None: ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[Description]:
        """Description to publish once set_local_description has returned"""

    @property
    @abstractmethod
    def connection_state(self) -> str: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: Candidate) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


# ============================================================================
# aiortc implementation
# ============================================================================

class AiortcDataChannel(PeerDataChannel):
    """Wraps aiortc.RTCDataChannel"""

    def __init__(self, channel: Any):
        super().__init__()
        self._channel = channel
        channel.on("open", lambda: self.emit("open"))
        channel.on("message", lambda message: self.emit("message", message))
        channel.on("close", lambda: self.emit("close"))

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str) -> None:
        self._channel.send(data)

    def close(self) -> None:
        self._channel.close()


class AiortcPeerTransport(PeerTransport):
    """
    aiortc RTCPeerConnection adapter.

    aiortc gathers every local candidate inside setLocalDescription and
    embeds them in the local SDP, so this transport never emits
    "icecandidate"; it signals "icegatheringcomplete" right after the local
    description is set. Trickled candidates from a browser peer are still
    accepted through add_ice_candidate.
    """

    def __init__(self, ice_servers: List[str]):
        super().__init__()
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._pc.on("connectionstatechange", self._on_connection_state)
        self._pc.on("datachannel", self._on_datachannel)

    def _on_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.debug(f"Connection state: {state}")
        self.emit("connectionstatechange", state)

    def _on_datachannel(self, channel: Any) -> None:
        self.emit("datachannel", AiortcDataChannel(channel))

    @staticmethod
    def _to_rtc(description: Description) -> Any:
        return RTCSessionDescription(sdp=description["sdp"], type=description["type"])

    def create_data_channel(self, label: str, ordered: bool = True) -> PeerDataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label, ordered=ordered))

    async def create_offer(self) -> Description:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Description) -> None:
        await self._pc.setLocalDescription(self._to_rtc(description))
        self.emit("icegatheringcomplete")

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(self._to_rtc(description))

    @property
    def local_description(self) -> Optional[Description]:
        local = self._pc.localDescription
        if local is None:
            return None
        return {"type": local.type, "sdp": local.sdp}

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    async def add_ice_candidate(self, candidate: Candidate) -> None:
        value = candidate.get("candidate") or ""
        if not value:
            # Browsers send an empty candidate as end-of-candidates marker
            return
        if value.startswith("candidate:"):
            value = value.split(":", 1)[1]

        rtc_candidate = candidate_from_sdp(value)
        rtc_candidate.sdpMid = candidate.get("sdpMid")
        rtc_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(rtc_candidate)

    async def close(self) -> None:
        await self._pc.close()


def create_aiortc_transport(ice_servers: List[str]) -> PeerTransport:
    return AiortcPeerTransport(ice_servers)

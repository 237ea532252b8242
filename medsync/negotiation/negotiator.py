"""
Connection Negotiator - drives offer/answer/candidate exchange through the relay

SenderNegotiator: creates the offer, publishes the session, waits for an answer
ReceiverNegotiator: looks the session up by code, answers, waits for the channel

Relay updates arrive on two paths: the realtime subscription and a poll loop.
Both funnel into handle_session_update(), which runs under one lock so the
answer is applied at most once and candidates are applied in order.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Dict, Optional, Set

from medsync.config import MedSyncSettings
from medsync.errors import (
    ErrorType,
    MedSyncError,
    NegotiationError,
    RelayError,
    SessionAlreadyAnsweredError,
    SessionNotFoundError,
    USER_MESSAGES,
)
from medsync.negotiation.state import NegotiationState, SyncStatus
from medsync.negotiation.transport import PeerDataChannel, PeerTransport
from medsync.pairing import generate_pairing_code
from medsync.relay.base import SessionRelay, Subscription
from medsync.relay.models import PeerRole, SessionStatus, SyncSession

logger = logging.getLogger(__name__)

StatusCallback = Callable[[SyncStatus], None]
FailureCallback = Callable[[str, Optional[BaseException]], None]
ChannelCallback = Callable[[PeerDataChannel], None]

MAX_CODE_ATTEMPTS = 3


class NegotiationCancelled(Exception):
    """Raised inside start() when the negotiator was closed mid-flight"""


class ConnectionNegotiator:
    """Shared plumbing for both roles"""

    role: PeerRole

    def __init__(
        self,
        relay: SessionRelay,
        transport: PeerTransport,
        settings: MedSyncSettings,
        state: Optional[NegotiationState] = None,
        on_status: Optional[StatusCallback] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        self.relay = relay
        self.transport = transport
        self.settings = settings
        self.state = state or NegotiationState()
        self.channel: Optional[PeerDataChannel] = None

        self._on_status = on_status or (lambda status: None)
        self._on_failure = on_failure or (lambda message, exc: None)

        self._lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self._transport_closed = False

        transport.on("icecandidate", self._on_local_candidate)
        transport.on("icegatheringcomplete", self._on_gathering_complete)
        transport.on("connectionstatechange", self._on_connection_state)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def watching(self) -> bool:
        return self._subscription is not None or self._poll_task is not None

    # ===== Internal helpers =====

    def _check_open(self) -> None:
        if self._closed:
            raise NegotiationCancelled()

    def _spawn(self, what: str, func: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        # func is only called once the task runs
        task = asyncio.create_task(self._guard(what, func, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, what: str, func: Callable[..., Coroutine[Any, Any, None]], *args: Any) -> None:
        try:
            await func(*args)
        except MedSyncError as e:
            logger.error(f"{self.role.value}: {what} failed: {e.message}")
            self._fail(self._failure_message(e), e)
        except Exception as e:
            logger.error(f"{self.role.value}: {what} failed: {e}", exc_info=True)
            self._fail(USER_MESSAGES["connection_failed"], e)

    def _fail(self, message: str, exc: Optional[BaseException] = None) -> None:
        if self._closed:
            return
        self._on_failure(message, exc)

    def _failure_message(self, exc: MedSyncError) -> str:
        return USER_MESSAGES["connection_failed"]

    # ===== Transport events =====

    def _on_local_candidate(self, candidate: Dict[str, Any]) -> None:
        if self._closed:
            return
        self.state.local_candidates.append(dict(candidate, origin=self.role.value))
        if self.state.gathering_complete:
            # Late candidate after the batch went out
            self._spawn("candidate publish", self._publish_candidates)

    def _on_gathering_complete(self) -> None:
        if self._closed:
            return
        self.state.gathering_complete = True
        logger.debug(f"{self.role.value}: gathering complete, {len(self.state.local_candidates)} candidates")
        self._spawn("candidate publish", self._publish_candidates)

    def _on_connection_state(self, state: str) -> None:
        if self._closed:
            return
        logger.info(f"{self.role.value}: connection state {state}", extra={"role": self.role.value})
        if state == "connected":
            self._on_status(SyncStatus.CONNECTED)
        elif state in ("failed", "disconnected"):
            self._fail(USER_MESSAGES["connection_failed"], NegotiationError(f"Connection {state}"))

    # ===== Candidates =====

    async def _publish_candidates(self) -> None:
        """Publish buffered local candidates once gathering is done and the session exists"""
        state = self.state
        if self._closed or state.session_id is None or not state.gathering_complete:
            return

        batch = state.local_candidates[state.local_candidates_published:]
        if not batch:
            return
        # Advance before awaiting so a concurrent trigger does not resend the batch
        state.local_candidates_published += len(batch)
        await self.relay.add_candidates(state.session_id, batch)
        logger.info(f"{self.role.value}: published {len(batch)} local candidates")

    async def _apply_remote_candidates(self, session: SyncSession, source: str) -> None:
        remote = session.candidates_from(self.role.peer)
        fresh = remote[self.state.remote_candidates_applied:]
        if not fresh:
            return
        self.state.remote_candidates_applied = len(remote)

        for candidate in fresh:
            try:
                await self.transport.add_ice_candidate(candidate)
            except Exception as e:
                logger.warning(f"{self.role.value}: could not add remote candidate: {e}")
        logger.info(
            f"{self.role.value}: applied {len(fresh)} remote candidates via {source}",
            extra={"path": source, "role": self.role.value},
        )

    # ===== Relay observation =====

    async def handle_session_update(self, session: SyncSession, source: str) -> None:
        """Apply a session observed via the realtime push or the poll"""
        async with self._lock:
            if self._closed or session.id != self.state.session_id:
                return
            await self._process_update(session, source)

    async def _process_update(self, session: SyncSession, source: str) -> None:
        await self._apply_remote_candidates(session, source)

    def _on_realtime_update(self, session: SyncSession) -> None:
        if self._closed or not self.watching:
            return
        self._spawn("realtime update", self.handle_session_update, session, "realtime")

    async def _poll_loop(self) -> None:
        interval = self.settings.poll_interval_seconds
        while not self._closed:
            await asyncio.sleep(interval)
            if self._closed:
                return
            try:
                session = await self.relay.get_session(self.state.session_id)
            except RelayError as e:
                logger.error(f"{self.role.value}: poll failed: {e.message}")
                self._poll_task = None
                self._fail(self._failure_message(e), e)
                return
            await self.handle_session_update(session, "poll")

    def _start_watching(self) -> None:
        if self.channel is not None and self.channel.ready_state == "open":
            return
        session_id = self.state.session_id
        self._subscription = self.relay.subscribe(session_id, self._on_realtime_update)
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.debug(f"{self.role.value}: watching session {session_id}")

    def stop_watching(self) -> None:
        """Drop the subscription and stop polling"""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ===== Lifecycle =====

    def detach(self) -> None:
        """Stop watching and stop delivering callbacks. Transport stays open."""
        if self._closed:
            return
        self._closed = True
        self.stop_watching()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self.transport.remove_all_listeners()
        if self.channel is not None:
            self.channel.remove_all_listeners()

    def release(self) -> None:
        """detach() and close the data channel"""
        self.detach()
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as e:
                logger.debug(f"Closing data channel failed: {e}")

    async def close(self) -> None:
        """Release everything including the peer connection. Idempotent."""
        self.release()
        if self._transport_closed:
            return
        self._transport_closed = True
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Closing peer connection failed: {e}")


class SenderNegotiator(ConnectionNegotiator):
    """Offering side. The data channel exists from construction on."""

    role = PeerRole.SENDER

    def __init__(self, relay: SessionRelay, transport: PeerTransport, settings: MedSyncSettings, **kwargs: Any):
        super().__init__(relay, transport, settings, **kwargs)
        self.channel = transport.create_data_channel(settings.channel_label, ordered=True)
        self.channel.on("open", self.stop_watching)

    def _failure_message(self, exc: MedSyncError) -> str:
        if isinstance(exc, SessionNotFoundError):
            return USER_MESSAGES["expired"]
        return USER_MESSAGES["connection_failed"]

    async def _create_session(self, pairing_code: str, offer: Dict[str, Any]) -> SyncSession:
        code = pairing_code
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            try:
                return await self.relay.create_session(code, offer)
            except RelayError as e:
                if e.error_type != ErrorType.PAIRING_CODE_IN_USE or attempt == MAX_CODE_ATTEMPTS:
                    raise
                logger.info(f"Pairing code collision, retrying ({attempt}/{MAX_CODE_ATTEMPTS})")
                code = generate_pairing_code()
        raise RelayError("Could not allocate a pairing code", error_type=ErrorType.PAIRING_CODE_IN_USE)

    async def start(self, pairing_code: str) -> SyncSession:
        """
        Create the offer and publish the session under pairing_code.

        The returned session carries the relay's pairing code and expiry; the
        code differs from the requested one if it collided with a live session.
        """
        offer = await self.transport.create_offer()
        self._check_open()
        await self.transport.set_local_description(offer)
        self._check_open()

        session = await self._create_session(pairing_code, self.transport.local_description or offer)
        if self._closed:
            try:
                await self.relay.delete_session(session.id)
            except RelayError as e:
                logger.debug(f"Discarding cancelled session failed: {e.message}")
            raise NegotiationCancelled()

        self.state.session_id = session.id
        logger.info(f"Session {session.id} published", extra={"role": self.role.value})

        await self._publish_candidates()
        self._check_open()
        self._start_watching()
        return session

    async def _process_update(self, session: SyncSession, source: str) -> None:
        if session.answer is not None:
            if not self.state.answer_applied:
                self.state.answer_applied = True
                logger.info(
                    f"Answer received via {source}",
                    extra={"path": source, "role": self.role.value},
                )
                self._on_status(SyncStatus.CONNECTING)
                await self.transport.set_remote_description(session.answer)
            else:
                logger.debug(f"Answer already applied, ignoring {source} observation")

        # Remote candidates are only usable once the answer is in place
        if self.state.answer_applied:
            await self._apply_remote_candidates(session, source)


class ReceiverNegotiator(ConnectionNegotiator):
    """Answering side. The data channel arrives from the sender."""

    role = PeerRole.RECEIVER

    def __init__(
        self,
        relay: SessionRelay,
        transport: PeerTransport,
        settings: MedSyncSettings,
        on_channel: Optional[ChannelCallback] = None,
        **kwargs: Any,
    ):
        super().__init__(relay, transport, settings, **kwargs)
        self._on_channel = on_channel or (lambda channel: None)
        transport.on("datachannel", self._on_datachannel)

    def _failure_message(self, exc: MedSyncError) -> str:
        if isinstance(exc, (SessionNotFoundError, SessionAlreadyAnsweredError)):
            return USER_MESSAGES["not_found"]
        return USER_MESSAGES["connection_failed"]

    def _on_datachannel(self, channel: PeerDataChannel) -> None:
        if self._closed:
            return
        logger.info(f"Data channel '{channel.label}' received", extra={"role": self.role.value})
        self.channel = channel
        self.stop_watching()
        self._on_channel(channel)

    async def start(self, pairing_code: str) -> SyncSession:
        """Look up the session, publish the answer and apply known candidates"""
        session = await self.relay.find_session_by_code(pairing_code)
        self._check_open()
        if session.answer is not None:
            # Another receiver already joined with this code
            raise SessionAlreadyAnsweredError(session.id)
        if not session.offer:
            raise NegotiationError("Session has no offer", details={"session_id": session.id})

        self.state.session_id = session.id
        await self.transport.set_remote_description(session.offer)
        self._check_open()
        answer = await self.transport.create_answer()
        self._check_open()
        await self.transport.set_local_description(answer)
        self._check_open()

        await self.relay.update_session(
            session.id,
            answer=self.transport.local_description or answer,
            status=SessionStatus.CONNECTED,
        )
        self._check_open()
        logger.info(f"Answer published for session {session.id}", extra={"role": self.role.value})

        async with self._lock:
            await self._apply_remote_candidates(session, "lookup")
        await self._publish_candidates()
        self._check_open()
        self._start_watching()
        return session

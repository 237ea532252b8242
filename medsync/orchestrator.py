"""
Sync Orchestrator - one transfer at a time, sender or receiver

Owns the user-visible state (status, error, progress, countdown, pairing
code) and wires the negotiator and the transfer channel together:

    sender:   idle -> generating-code -> waiting -> connecting -> connected
              -> transferring -> completed
    receiver: idle -> connecting -> connected -> transferring -> completed

Any failure moves to error and releases the peer connection, the data
channel, the relay subscription and every timer. cancel() does the same and
returns to idle. Status only moves forward except to error or idle.
"""

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, UTC
from functools import partial
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, Union

from medsync.config import MedSyncSettings, get_settings
from medsync.errors import (
    InvalidPairingCodeError,
    RelayError,
    SessionAlreadyAnsweredError,
    SessionNotFoundError,
    USER_MESSAGES,
)
from medsync.logging_config import sync_session_ctx
from medsync.negotiation import (
    ConnectionNegotiator,
    NegotiationCancelled,
    NegotiationState,
    PeerDataChannel,
    PeerTransport,
    ReceiverNegotiator,
    SenderNegotiator,
    STATUS_ORDER,
    SyncStatus,
    create_aiortc_transport,
)
from medsync.pairing import generate_pairing_code, is_valid_pairing_code, normalize_pairing_code
from medsync.records import RecordList
from medsync.relay.base import SessionRelay
from medsync.relay.models import PeerRole
from medsync.transfer import ReceiverChannel, SenderChannel, TransferChannel

logger = logging.getLogger(__name__)

ReceivedCallback = Callable[[RecordList], Union[None, Awaitable[None]]]
StateListener = Callable[["SyncState"], None]
TransportFactory = Callable[[], PeerTransport]


@dataclass(frozen=True)
class SyncState:
    """Snapshot of what the user sees"""
    status: SyncStatus = SyncStatus.IDLE
    error: str = ""
    progress: int = 0
    time_remaining: int = 0
    pairing_code: str = ""
    role: Optional[PeerRole] = None
    session_id: Optional[str] = None


@dataclass
class TransferSession:
    """Everything owned by one start_sender/start_receiver call"""
    role: PeerRole
    status: SyncStatus = SyncStatus.IDLE
    error: str = ""
    progress: int = 0
    time_remaining: int = 0
    pairing_code: str = ""
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    negotiation: NegotiationState = field(default_factory=NegotiationState)
    negotiator: Optional[ConnectionNegotiator] = None
    channel: Optional[TransferChannel] = None
    tasks: Set[asyncio.Task] = field(default_factory=set)
    closed: bool = False
    finished: asyncio.Event = field(default_factory=asyncio.Event)

    def snapshot(self) -> SyncState:
        return SyncState(
            status=self.status,
            error=self.error,
            progress=self.progress,
            time_remaining=self.time_remaining,
            pairing_code=self.pairing_code,
            role=self.role,
            session_id=self.session_id,
        )


class SyncOrchestrator:
    """Runs device-to-device transfers against a session relay"""

    def __init__(
        self,
        relay: SessionRelay,
        settings: Optional[MedSyncSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.relay = relay
        self.settings = settings or get_settings()
        self._transport_factory = transport_factory or partial(
            create_aiortc_transport, self.settings.ice_servers
        )
        self._session: Optional[TransferSession] = None
        self._closing: Set[asyncio.Task] = set()
        self._listeners: List[StateListener] = []
        self._start_lock = asyncio.Lock()

    # ===== State =====

    @property
    def state(self) -> SyncState:
        if self._session is None:
            return SyncState()
        return self._session.snapshot()

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    @property
    def error(self) -> str:
        return self.state.error

    @property
    def progress(self) -> int:
        return self.state.progress

    @property
    def time_remaining(self) -> int:
        return self.state.time_remaining

    @property
    def pairing_code(self) -> str:
        return self.state.pairing_code

    @property
    def session(self) -> Optional[TransferSession]:
        return self._session

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call listener with a snapshot after every change. Returns a remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, session: TransferSession) -> None:
        if session is not self._session:
            return
        snapshot = session.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    def _set_status(self, session: TransferSession, status: SyncStatus) -> None:
        if session.closed or session.status.is_terminal:
            return
        if STATUS_ORDER[status] <= STATUS_ORDER[session.status]:
            return
        logger.info(
            f"{session.role.value}: {session.status.value} -> {status.value}",
            extra={"role": session.role.value, "status": status.value},
        )
        session.status = status
        self._notify(session)

    # ===== Task bookkeeping =====

    def _spawn(self, session: TransferSession, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    def _release(self, session: TransferSession) -> None:
        """Synchronously stop timers and callbacks for a session"""
        session.closed = True
        current = asyncio.current_task()
        for task in list(session.tasks):
            if task is not current:
                task.cancel()
        if session.negotiator is not None:
            session.negotiator.release()

    async def _teardown(self, session: TransferSession) -> None:
        self._release(session)
        if session.negotiator is not None:
            await session.negotiator.close()
        session.finished.set()

    async def _drain_closing(self) -> None:
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def _reset_previous(self) -> None:
        """Tear the previous session down and give the platform a moment to settle"""
        previous = self._session
        if previous is not None:
            await self._teardown(previous)
            await self._drain_closing()
            self._session = None
            await asyncio.sleep(self.settings.settle_delay_seconds)

    def _fail(self, session: TransferSession, message: str, exc: Optional[BaseException] = None) -> None:
        if session.closed or session.status.is_terminal:
            return
        if exc is not None:
            logger.error(f"{session.role.value} failed: {message} ({exc})")
        else:
            logger.error(f"{session.role.value} failed: {message}")

        session.error = message
        session.status = SyncStatus.ERROR
        self._notify(session)

        self._release(session)
        task = asyncio.create_task(self._teardown(session))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _delete_relay_session(self, session: TransferSession) -> None:
        if session.session_id is None:
            return
        try:
            await self.relay.delete_session(session.session_id)
            logger.info(f"Session {session.session_id} deleted")
        except RelayError as e:
            # Expiry cleans it up eventually
            logger.warning(f"Could not delete session {session.session_id}: {e.message}")

    # ===== Sender =====

    async def start_sender(self, records: RecordList) -> TransferSession:
        """
        Publish an offer under a fresh pairing code and send records once a
        receiver connects. Returns once the code is published (status
        'waiting') or the start failed (status 'error').
        """
        async with self._start_lock:
            await self._reset_previous()

            session = TransferSession(role=PeerRole.SENDER)
            self._session = session
            self._set_status(session, SyncStatus.GENERATING_CODE)
            session.pairing_code = generate_pairing_code()
            self._notify(session)

            negotiator = SenderNegotiator(
                self.relay,
                self._transport_factory(),
                self.settings,
                state=session.negotiation,
                on_status=partial(self._set_status, session),
                on_failure=partial(self._fail, session),
            )
            session.negotiator = negotiator
            session.channel = SenderChannel(
                negotiator.channel,
                records,
                self.settings.max_message_bytes,
                on_open=partial(self._set_status, session, SyncStatus.TRANSFERRING),
                on_sent=partial(self._on_sent, session),
                on_failure=partial(self._fail, session),
            )

            try:
                relay_session = await negotiator.start(session.pairing_code)
            except NegotiationCancelled:
                logger.info("Sender start cancelled")
                return session
            except Exception as e:
                self._fail(session, USER_MESSAGES["sender_start_failed"], e)
                return session

            session.session_id = relay_session.id
            session.pairing_code = relay_session.pairing_code
            session.expires_at = relay_session.expires_at
            sync_session_ctx.set(relay_session.id)
            self._refresh_time_remaining(session)
            self._set_status(session, SyncStatus.WAITING)
            self._spawn(session, self._countdown(session))
            return session

    @staticmethod
    def _refresh_time_remaining(session: TransferSession) -> float:
        remaining = (session.expires_at - datetime.now(UTC)).total_seconds()
        session.time_remaining = max(0, math.ceil(remaining))
        return remaining

    async def _countdown(self, session: TransferSession) -> None:
        """Tick time_remaining down to the relay's expiry"""
        interval = self.settings.countdown_interval_seconds
        while not session.closed:
            if STATUS_ORDER.get(session.status, 0) >= STATUS_ORDER[SyncStatus.CONNECTED]:
                return
            remaining = self._refresh_time_remaining(session)
            self._notify(session)
            if session.time_remaining == 0:
                logger.warning("Pairing code expired before a receiver connected")
                self._fail(session, USER_MESSAGES["expired"])
                return
            await asyncio.sleep(min(interval, max(remaining, 0.01)))

    def _on_sent(self, session: TransferSession, size: int) -> None:
        session.progress = 100
        self._notify(session)
        # Keep the connection open so the message drains, but stop reacting to it
        session.negotiator.detach()
        self._spawn(session, self._finish_after_grace(session, self.settings.sender_grace_seconds))

    # ===== Receiver =====

    async def start_receiver(self, code: str, on_received: ReceivedCallback) -> TransferSession:
        """
        Join the session for code and hand the received records to
        on_received. A malformed code raises InvalidPairingCodeError before
        anything else happens.
        """
        normalized = normalize_pairing_code(code)
        if not is_valid_pairing_code(normalized):
            raise InvalidPairingCodeError(code)

        async with self._start_lock:
            await self._reset_previous()

            session = TransferSession(role=PeerRole.RECEIVER, pairing_code=normalized)
            self._session = session
            self._set_status(session, SyncStatus.CONNECTING)

            negotiator = ReceiverNegotiator(
                self.relay,
                self._transport_factory(),
                self.settings,
                on_channel=partial(self._on_receiver_channel, session, on_received),
                state=session.negotiation,
                on_status=partial(self._set_status, session),
                on_failure=partial(self._fail, session),
            )
            session.negotiator = negotiator

            try:
                relay_session = await negotiator.start(normalized)
            except NegotiationCancelled:
                logger.info("Receiver start cancelled")
                return session
            except (SessionNotFoundError, SessionAlreadyAnsweredError) as e:
                self._fail(session, USER_MESSAGES["not_found"], e)
                return session
            except Exception as e:
                self._fail(session, USER_MESSAGES["receiver_start_failed"], e)
                return session

            session.session_id = relay_session.id
            sync_session_ctx.set(relay_session.id)
            self._notify(session)
            return session

    def _on_receiver_channel(
        self,
        session: TransferSession,
        on_received: ReceivedCallback,
        channel: PeerDataChannel,
    ) -> None:
        if session.closed:
            return
        session.channel = ReceiverChannel(
            channel,
            on_message=partial(self._set_status, session, SyncStatus.TRANSFERRING),
            on_records=partial(self._on_records, session, on_received),
            on_failure=partial(self._fail, session),
        )
        if channel.ready_state == "open":
            self._set_status(session, SyncStatus.CONNECTED)

    def _on_records(self, session: TransferSession, on_received: ReceivedCallback, records: RecordList) -> None:
        session.progress = 100
        self._notify(session)
        # The sender closes its side after its own grace delay
        session.negotiator.detach()
        self._spawn(
            session,
            self._finish_after_grace(session, self.settings.receiver_grace_seconds, records, on_received),
        )

    # ===== Completion =====

    async def _finish_after_grace(
        self,
        session: TransferSession,
        delay: float,
        records: Optional[RecordList] = None,
        on_received: Optional[ReceivedCallback] = None,
    ) -> None:
        await asyncio.sleep(delay)
        if session.closed:
            return

        if on_received is not None:
            try:
                result = on_received(records)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handling received records failed: {e}", exc_info=True)
                self._fail(session, USER_MESSAGES["receive_failed"], e)
                return
            if session.closed:
                return

        await self._delete_relay_session(session)
        self._set_status(session, SyncStatus.COMPLETED)
        await self._teardown(session)

    # ===== Control =====

    async def cancel(self) -> None:
        """Abort whatever is running and return to idle"""
        session = self._session
        if session is not None:
            logger.info(f"{session.role.value}: cancelled in status {session.status.value}")
            await self._teardown(session)
        await self._drain_closing()
        self._session = None
        sync_session_ctx.set("")
        for listener in list(self._listeners):
            try:
                listener(SyncState())
            except Exception:
                logger.exception("State listener failed")

    async def wait_finished(self, timeout: Optional[float] = None) -> SyncState:
        """Wait until the current session completed, failed or was cancelled"""
        session = self._session
        if session is None:
            return SyncState()
        await asyncio.wait_for(session.finished.wait(), timeout)
        return session.snapshot()

    async def close(self) -> None:
        await self.cancel()

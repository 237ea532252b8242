"""
Tests for SyncOrchestrator

Sender and receiver run in one event loop over the in-memory relay and the
loopback transports from conftest.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from medsync.errors import InvalidPairingCodeError, SessionNotFoundError, USER_MESSAGES
from medsync.negotiation import STATUS_ORDER, SyncStatus
from medsync.orchestrator import SyncOrchestrator, SyncState
from medsync.pairing import format_pairing_code, is_valid_pairing_code
from medsync.relay import InMemorySessionRelay

TIMEOUT = 5


def _pair(relay, network, settings):
    sender = SyncOrchestrator(relay, settings, transport_factory=network.transport)
    receiver = SyncOrchestrator(relay, settings, transport_factory=network.transport)
    return sender, receiver


def _recorder(orchestrator):
    statuses = []

    def listener(state: SyncState):
        if not statuses or statuses[-1] != state.status:
            statuses.append(state.status)

    orchestrator.add_listener(listener)
    return statuses


class TestTransfer:
    """End-to-end sender -> receiver"""

    @pytest.mark.asyncio
    async def test_records_arrive_and_both_complete(self, relay, network, fast_settings, sample_records):
        sender, receiver = _pair(relay, network, fast_settings)
        sender_statuses = _recorder(sender)
        receiver_statuses = _recorder(receiver)
        received = []

        session = await sender.start_sender(sample_records)
        assert sender.status == SyncStatus.WAITING
        assert is_valid_pairing_code(sender.pairing_code)
        assert sender.time_remaining > 0

        # Typed the way a user reads it off the screen
        typed = format_pairing_code(sender.pairing_code).lower()
        await receiver.start_receiver(typed, received.extend)

        sender_state, receiver_state = await asyncio.wait_for(
            asyncio.gather(sender.wait_finished(), receiver.wait_finished()), TIMEOUT
        )

        assert sender_state.status == SyncStatus.COMPLETED
        assert receiver_state.status == SyncStatus.COMPLETED
        assert sender_state.progress == 100
        assert receiver_state.progress == 100
        assert [r.name for r in received] == [r.name for r in sample_records]
        assert [r.created_at for r in received] == [r.created_at for r in sample_records]

        # Session removed from the relay, every connection closed
        with pytest.raises(SessionNotFoundError):
            await relay.get_session(session.session_id)
        assert all(t.closed for t in network.transports)

        assert sender_statuses[:2] == [SyncStatus.GENERATING_CODE, SyncStatus.WAITING]
        assert SyncStatus.CONNECTED in sender_statuses
        assert SyncStatus.TRANSFERRING in receiver_statuses
        for statuses in (sender_statuses, receiver_statuses):
            ranks = [STATUS_ORDER[s] for s in statuses]
            assert ranks == sorted(ranks)

    @pytest.mark.asyncio
    async def test_async_on_received_is_awaited(self, relay, network, fast_settings, sample_records):
        sender, receiver = _pair(relay, network, fast_settings)
        on_received = AsyncMock()

        await sender.start_sender(sample_records)
        await receiver.start_receiver(sender.pairing_code, on_received)
        await asyncio.wait_for(receiver.wait_finished(), TIMEOUT)

        on_received.assert_awaited_once()
        assert len(on_received.await_args[0][0]) == len(sample_records)
        await sender.cancel()

    @pytest.mark.asyncio
    async def test_sender_snapshot_taken_at_start(self, relay, network, fast_settings, sample_records):
        """Mutating the caller's list after start does not change the payload"""
        sender, receiver = _pair(relay, network, fast_settings)
        records = list(sample_records)
        received = []

        await sender.start_sender(records)
        records.clear()
        await receiver.start_receiver(sender.pairing_code, received.extend)
        await asyncio.wait_for(receiver.wait_finished(), TIMEOUT)

        assert len(received) == len(sample_records)
        await sender.cancel()

    @pytest.mark.asyncio
    async def test_waiting_is_announced_with_time_left(self, relay, network, fast_settings, sample_records):
        """The first waiting snapshot already carries the countdown"""
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)
        waiting = []

        def listener(state: SyncState):
            if state.status == SyncStatus.WAITING:
                waiting.append(state)

        sender.add_listener(listener)

        await sender.start_sender(sample_records)

        assert waiting
        assert 0 < waiting[0].time_remaining <= relay.ttl_seconds
        await sender.cancel()


class TestReceiverFailures:
    """Receiver-side error paths"""

    @pytest.mark.asyncio
    async def test_invalid_code_rejected_without_network(self, fast_settings):
        relay = MagicMock()
        orchestrator = SyncOrchestrator(relay, fast_settings, transport_factory=MagicMock())

        with pytest.raises(InvalidPairingCodeError):
            await orchestrator.start_receiver("ABC", MagicMock())

        assert relay.method_calls == []
        assert orchestrator.status == SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_unknown_code(self, relay, network, fast_settings):
        orchestrator = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)

        await orchestrator.start_receiver("ABCDEF", MagicMock())
        state = await asyncio.wait_for(orchestrator.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["not_found"]
        assert network.transports[0].closed

    @pytest.mark.asyncio
    async def test_second_receiver_cannot_take_over(self, relay, network, fast_settings, sample_records):
        """Only the first receiver to answer gets the records"""
        sender, first = _pair(relay, network, fast_settings)
        second = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)
        received = []

        await sender.start_sender(sample_records)
        await first.start_receiver(sender.pairing_code, received.extend)
        await second.start_receiver(sender.pairing_code, MagicMock())

        second_state = await asyncio.wait_for(second.wait_finished(), TIMEOUT)
        assert second_state.status == SyncStatus.ERROR
        assert second_state.error == USER_MESSAGES["not_found"]
        assert network.transports[2].remote_description_calls == 0
        assert network.transports[2].closed

        sender_state, first_state = await asyncio.wait_for(
            asyncio.gather(sender.wait_finished(), first.wait_finished()), TIMEOUT
        )
        assert sender_state.status == SyncStatus.COMPLETED
        assert first_state.status == SyncStatus.COMPLETED
        assert len(received) == len(sample_records)

    @pytest.mark.asyncio
    async def test_unparseable_payload(self, relay, network, fast_settings, sample_records):
        sender, receiver = _pair(relay, network, fast_settings)
        on_received = MagicMock()

        with patch("medsync.transfer.channel.records_to_json", return_value="{broken"):
            await sender.start_sender(sample_records)
            await receiver.start_receiver(sender.pairing_code, on_received)
            state = await asyncio.wait_for(receiver.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["receive_failed"]
        on_received.assert_not_called()
        await sender.cancel()

    @pytest.mark.asyncio
    async def test_failing_import_is_reported(self, relay, network, fast_settings, sample_records):
        sender, receiver = _pair(relay, network, fast_settings)

        await sender.start_sender(sample_records)
        await receiver.start_receiver(sender.pairing_code, MagicMock(side_effect=OSError("disk full")))
        state = await asyncio.wait_for(receiver.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["receive_failed"]
        await sender.cancel()


class TestSenderFailures:
    """Sender-side error paths"""

    @pytest.mark.asyncio
    async def test_code_expires_without_receiver(self, network, fast_settings, sample_records):
        relay = InMemorySessionRelay(ttl_seconds=0.3)
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)
        statuses = _recorder(sender)

        await sender.start_sender(sample_records)
        state = await asyncio.wait_for(sender.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["expired"]
        assert SyncStatus.CONNECTED not in statuses
        assert network.transports[0].closed

    @pytest.mark.asyncio
    async def test_countdown_stops_at_zero_when_unreachable(self, relay, network, fast_settings, sample_records):
        """Connectivity never comes up: expiry still ends the attempt"""
        network.blocked = True
        relay.ttl_seconds = 0.3
        sender, receiver = _pair(relay, network, fast_settings)

        await sender.start_sender(sample_records)
        await receiver.start_receiver(sender.pairing_code, MagicMock())
        state = await asyncio.wait_for(sender.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["expired"]
        await receiver.cancel()

    @pytest.mark.asyncio
    async def test_oversized_payload_fails_both_sides(self, relay, network, fast_settings, sample_records):
        settings = fast_settings.model_copy(update={"max_message_bytes": 16})
        sender, receiver = _pair(relay, network, settings)
        on_received = MagicMock()

        await sender.start_sender(sample_records)
        await receiver.start_receiver(sender.pairing_code, on_received)
        sender_state, receiver_state = await asyncio.wait_for(
            asyncio.gather(sender.wait_finished(), receiver.wait_finished()), TIMEOUT
        )

        assert sender_state.status == SyncStatus.ERROR
        assert sender_state.error == USER_MESSAGES["transfer_failed"]
        assert receiver_state.status == SyncStatus.ERROR
        assert receiver_state.error == USER_MESSAGES["transfer_failed"]
        on_received.assert_not_called()

    @pytest.mark.asyncio
    async def test_relay_down_on_start(self, network, fast_settings, sample_records):
        relay = InMemorySessionRelay()
        relay.create_session = AsyncMock(side_effect=OSError("unreachable"))
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)

        await sender.start_sender(sample_records)
        state = await asyncio.wait_for(sender.wait_finished(), TIMEOUT)

        assert state.status == SyncStatus.ERROR
        assert state.error == USER_MESSAGES["sender_start_failed"]


class TestCancel:
    """cancel() and restarting"""

    @pytest.mark.asyncio
    async def test_cancel_returns_to_idle_and_silences_callbacks(self, relay, network, fast_settings, sample_records):
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)
        states = []
        sender.add_listener(states.append)

        session = await sender.start_sender(sample_records)
        await sender.cancel()
        seen = len(states)

        assert sender.state == SyncState()
        assert states[-1] == SyncState()
        assert network.transports[0].closed
        assert relay.subscriber_count(session.session_id) == 0

        # Late writes and transport events change nothing
        await relay.update_session(session.session_id, answer={"type": "answer", "sdp": "x"})
        network.transports[0].emit("connectionstatechange", "connected")
        await asyncio.sleep(fast_settings.poll_interval_seconds * 3)

        assert len(states) == seen
        assert network.transports[0].remote_description_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_harmless(self, relay, fast_settings):
        orchestrator = SyncOrchestrator(relay, fast_settings)
        await orchestrator.cancel()
        assert orchestrator.status == SyncStatus.IDLE

    @pytest.mark.asyncio
    async def test_new_start_tears_down_previous(self, relay, network, fast_settings, sample_records):
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)

        first = await sender.start_sender(sample_records)
        second = await sender.start_sender(sample_records)

        assert first.closed
        assert network.transports[0].closed
        assert relay.subscriber_count(first.session_id) == 0
        assert sender.session is second
        assert sender.status == SyncStatus.WAITING
        assert second.pairing_code != "" and second.session_id != first.session_id
        await sender.cancel()

    @pytest.mark.asyncio
    async def test_remover_detaches_listener(self, relay, network, fast_settings, sample_records):
        sender = SyncOrchestrator(relay, fast_settings, transport_factory=network.transport)
        listener = MagicMock()
        remove = sender.add_listener(listener)
        remove()

        await sender.start_sender(sample_records)
        await sender.cancel()

        listener.assert_not_called()

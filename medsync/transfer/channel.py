"""
Transfer Channel - moves the record list over an open data channel

The whole list travels as one JSON text message. SenderChannel sends it as
soon as the channel opens; ReceiverChannel decodes the first message. Either
side reports an error or a close before the transfer finished as a failure.
"""

import logging
from typing import Callable, Optional, Union

from medsync.errors import ErrorType, TransferError, USER_MESSAGES
from medsync.negotiation.transport import PeerDataChannel
from medsync.records import RecordList, records_from_json, records_to_json

logger = logging.getLogger(__name__)

FailureCallback = Callable[[str, Optional[BaseException]], None]


def encode_payload(records: RecordList, max_message_bytes: Optional[int] = None) -> str:
    """Serialize records for the wire, enforcing the message size limit"""
    payload = records_to_json(records)
    size = len(payload.encode("utf-8"))
    if max_message_bytes is not None and size > max_message_bytes:
        raise TransferError(
            f"Payload of {size} bytes exceeds the {max_message_bytes} byte limit",
            error_type=ErrorType.PAYLOAD_TOO_LARGE,
            details={"size": size, "limit": max_message_bytes},
        )
    return payload


def decode_payload(data: Union[str, bytes]) -> RecordList:
    try:
        return records_from_json(data)
    except ValueError as e:
        raise TransferError(
            "Received payload is not a valid record list",
            error_type=ErrorType.PAYLOAD_INVALID,
            details={"error": str(e)[:200]},
        ) from e


class TransferChannel:
    """Common error/close handling for one side of a transfer"""

    def __init__(self, channel: PeerDataChannel, on_failure: FailureCallback):
        self.channel = channel
        self.finished = False
        self._on_failure = on_failure
        channel.on("error", self._on_error)
        channel.on("close", self._on_close)

    def _finish_with_failure(self, message: str, exc: Optional[BaseException]) -> None:
        if self.finished:
            return
        self.finished = True
        self._on_failure(message, exc)

    def _on_error(self, exc: BaseException) -> None:
        logger.error(f"Data channel error: {exc}")
        self._finish_with_failure(USER_MESSAGES["transfer_failed"], exc)

    def _on_close(self) -> None:
        if not self.finished:
            logger.warning("Data channel closed before the transfer finished")
        self._finish_with_failure(
            USER_MESSAGES["transfer_failed"],
            TransferError("Channel closed before the transfer finished"),
        )


class SenderChannel(TransferChannel):
    """Sends the snapshot taken at construction when the channel opens"""

    def __init__(
        self,
        channel: PeerDataChannel,
        records: RecordList,
        max_message_bytes: int,
        on_open: Callable[[], None],
        on_sent: Callable[[int], None],
        on_failure: FailureCallback,
    ):
        super().__init__(channel, on_failure)
        self.records = list(records)
        self.max_message_bytes = max_message_bytes
        self._on_open_cb = on_open
        self._on_sent = on_sent
        channel.on("open", self._on_open)

    def _on_open(self) -> None:
        if self.finished:
            return
        self._on_open_cb()
        try:
            payload = encode_payload(self.records, self.max_message_bytes)
            self.channel.send(payload)
        except TransferError as e:
            logger.error(f"Transfer aborted: {e.message}")
            self._finish_with_failure(USER_MESSAGES["transfer_failed"], e)
            return
        except Exception as e:
            logger.error(f"Sending payload failed: {e}")
            self._finish_with_failure(USER_MESSAGES["transfer_failed"], e)
            return

        self.finished = True
        size = len(payload.encode("utf-8"))
        logger.info(f"Sent {len(self.records)} records ({size} bytes)")
        self._on_sent(size)


class ReceiverChannel(TransferChannel):
    """Decodes the first message on the channel"""

    def __init__(
        self,
        channel: PeerDataChannel,
        on_message: Callable[[], None],
        on_records: Callable[[RecordList], None],
        on_failure: FailureCallback,
    ):
        super().__init__(channel, on_failure)
        self._on_message_cb = on_message
        self._on_records = on_records
        channel.on("message", self._on_message)

    def _on_message(self, data: Union[str, bytes]) -> None:
        if self.finished:
            logger.debug("Ignoring extra message after transfer finished")
            return
        self._on_message_cb()
        try:
            records = decode_payload(data)
        except TransferError as e:
            logger.error(f"Could not decode payload: {e.details.get('error', e.message)}")
            self._finish_with_failure(USER_MESSAGES["receive_failed"], e)
            return

        self.finished = True
        logger.info(f"Received {len(records)} records")
        self._on_records(records)

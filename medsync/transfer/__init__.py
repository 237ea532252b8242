"""
Transfer Package

Single-message record transfer over an established data channel.
"""

from medsync.transfer.channel import (
    encode_payload,
    decode_payload,
    TransferChannel,
    SenderChannel,
    ReceiverChannel,
)

__all__ = [
    "encode_payload",
    "decode_payload",
    "TransferChannel",
    "SenderChannel",
    "ReceiverChannel",
]

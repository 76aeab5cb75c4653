"""TFTP client (RFC 1350, octet mode).

One ``TransferSession`` moves one file lock-step over UDP:
- message framing lives in ``packet``, separate from the transfer state machine
- retransmission is driven purely by receive timeouts, with a bounded budget
- every failure surfaces as a typed ``TftpError``
"""

from .errors import (
    ConnectError,
    PeerError,
    ProtocolError,
    TftpError,
    TimeoutExhausted,
    TransferError,
    TransferIOError,
    UsageError,
)
from .session import Direction, Metrics, TransferSession

__all__ = [
    "ConnectError",
    "Direction",
    "Metrics",
    "PeerError",
    "ProtocolError",
    "TftpError",
    "TimeoutExhausted",
    "TransferError",
    "TransferIOError",
    "TransferSession",
    "UsageError",
]

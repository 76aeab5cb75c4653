from __future__ import annotations

import enum
import errno
import logging
import time
from dataclasses import dataclass, field
from typing import BinaryIO

from .constants import (
    BLOCK_SIZE,
    DATA_HEADER_LEN,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_MS,
    MAX_BLOCK_NUMBER,
    MAX_DATA_PAYLOAD,
    MODE_OCTET,
)
from .errors import ConnectError, PeerError, ProtocolError, TimeoutExhausted, TransferIOError
from .net import Address, UdpEndpoint
from .packet import (
    Ack,
    Data,
    Error,
    ErrorCode,
    MalformedMessage,
    Message,
    ReadRequest,
    WriteRequest,
    decode,
)


class Direction(enum.Enum):
    UPLOAD = "put"
    DOWNLOAD = "get"


@dataclass(slots=True)
class Metrics:
    bytes_transferred: int = 0
    blocks: int = 0
    packets_sent: int = 0
    timeouts: int = 0
    retransmits: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_transferred * 8 / 1_000_000) / self.duration_s


@dataclass(slots=True)
class TransferSession:
    """One upload or download, driven lock-step until it completes or fails.

    ``udp`` only has to provide ``sendto(data, addr)`` and
    ``recvfrom(bufsize, timeout)`` (raising ``TimeoutError``). ``f`` is read
    from for uploads and written to for downloads.

    The first reply fixes the peer address; everything after goes there, and
    datagrams from anywhere else are refused with "Unknown transfer ID".
    Every retransmission resends ``last_outbound`` verbatim.
    """

    udp: UdpEndpoint
    server: Address
    direction: Direction
    filename: str
    f: BinaryIO
    mode: str = MODE_OCTET
    block_size: int = BLOCK_SIZE
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES

    current_block: int = field(default=0, init=False)
    final_block_seen: bool = field(default=False, init=False)
    last_outbound: bytes = field(default=b"", init=False, repr=False)
    peer: Address | None = field(default=None, init=False)
    metrics: Metrics = field(default_factory=Metrics, init=False)
    _final_sent: bool = field(default=False, init=False, repr=False)
    _outstanding: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        if not 0 < self.block_size <= MAX_DATA_PAYLOAD:
            raise ValueError(f"block size out of range: {self.block_size}")
        if self.timeout_ms <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("retry budget must not be negative")

    @property
    def bytes_transferred(self) -> int:
        return self.metrics.bytes_transferred

    def run(self) -> Metrics:
        if self.direction is Direction.DOWNLOAD:
            request = ReadRequest(self.filename, self.mode)
        else:
            request = WriteRequest(self.filename, self.mode)

        logging.info(
            "%s %r start; server=%s mode=%s",
            self.direction.value,
            self.filename,
            self.server,
            self.mode,
        )
        self.metrics = Metrics()
        self._send(request.to_bytes())
        self._loop()

        if self.direction is Direction.DOWNLOAD:
            try:
                self.f.flush()
            except OSError as exc:
                raise TransferIOError(f"cannot write {self.filename!r}: {exc}") from exc

        self.metrics.end_ts = time.monotonic()
        logging.info(
            "%s %r done; bytes=%d blocks=%d retransmits=%d",
            self.direction.value,
            self.filename,
            self.metrics.bytes_transferred,
            self.metrics.blocks,
            self.metrics.retransmits,
        )
        return self.metrics

    def _loop(self) -> None:
        timeout_s = self.timeout_ms / 1000.0
        bufsize = DATA_HEADER_LEN + self.block_size
        retries = 0
        deadline = time.monotonic() + timeout_s

        while not self.final_block_seen:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                raw, addr = self.udp.recvfrom(bufsize, timeout=remaining)
            except TimeoutError:
                retries += 1
                self.metrics.timeouts += 1
                if retries > self.max_retries:
                    raise TimeoutExhausted(retries, self.current_block) from None
                logging.debug("timeout; resend block=%d retry=%d", self.current_block, retries)
                self.metrics.retransmits += 1
                self._transmit(self.last_outbound)
                deadline = time.monotonic() + timeout_s
                continue
            except OSError as exc:
                raise ConnectError(f"receive failed: {exc}") from exc

            if not self._accept_sender(addr):
                continue

            try:
                msg = decode(raw)
            except MalformedMessage as exc:
                raise self._abort(f"malformed datagram from peer: {exc}") from exc

            logging.debug("recv %s from %s", msg.OPCODE.name, addr)
            if self._dispatch(msg):
                retries = 0
                deadline = time.monotonic() + timeout_s

    def _accept_sender(self, addr: Address) -> bool:
        if self.peer is None:
            self.peer = addr
            logging.debug("peer locked to %s", addr)
            return True
        if addr == self.peer:
            return True
        logging.warning("datagram from unknown transfer ID %s; refused", addr)
        self._notify(Error.from_code(ErrorCode.UNKNOWN_TID), addr)
        return False

    def _dispatch(self, msg: Message) -> bool:
        """React to one message from the peer; True when the transfer moved forward."""
        if isinstance(msg, Error):
            logging.info("peer error %d: %s", msg.code, msg.message)
            raise PeerError(msg.code, msg.message)
        if self.direction is Direction.DOWNLOAD and isinstance(msg, Data):
            return self._on_data(msg)
        if self.direction is Direction.UPLOAD and isinstance(msg, Ack):
            return self._on_ack(msg)
        raise self._abort(f"unexpected {msg.OPCODE.name} during {self.direction.value}")

    def _on_data(self, msg: Data) -> bool:
        expected = (self.current_block + 1) & MAX_BLOCK_NUMBER
        if msg.block != expected:
            if self.metrics.blocks == 0:
                raise self._abort(f"first data block is {msg.block}, expected {expected}")
            logging.debug("duplicate data block=%d; re-ack %d", msg.block, self.current_block)
            self.metrics.retransmits += 1
            self._transmit(self.last_outbound)
            return False

        payload = msg.payload[: self.block_size]
        try:
            self.f.write(payload)
        except OSError as exc:
            raise self._local_failure(exc, "write") from exc

        self.current_block = msg.block
        self.metrics.blocks += 1
        self.metrics.bytes_transferred += len(payload)
        self._send(Ack(msg.block).to_bytes())
        if len(payload) < self.block_size:
            self.final_block_seen = True
        return True

    def _on_ack(self, msg: Ack) -> bool:
        if msg.block != self.current_block:
            logging.warning("stale ack block=%d (expecting %d); ignored", msg.block, self.current_block)
            return False

        self.metrics.bytes_transferred += self._outstanding
        self._outstanding = 0
        if self._final_sent:
            self.final_block_seen = True
            return True

        payload = self._read_block()
        self.current_block = (self.current_block + 1) & MAX_BLOCK_NUMBER
        self._send(Data(self.current_block, payload).to_bytes(self.block_size))
        self.metrics.blocks += 1
        self._outstanding = len(payload)
        self._final_sent = len(payload) < self.block_size
        return True

    def _read_block(self) -> bytes:
        # pipes may return short reads before EOF; only EOF may shorten a block
        chunks = []
        size = 0
        while size < self.block_size:
            try:
                chunk = self.f.read(self.block_size - size)
            except OSError as exc:
                raise self._local_failure(exc, "read") from exc
            if not chunk:
                break
            chunks.append(chunk)
            size += len(chunk)
        return b"".join(chunks)

    def _send(self, data: bytes) -> None:
        self.last_outbound = data
        self._transmit(data)

    def _transmit(self, data: bytes, addr: Address | None = None) -> None:
        dest = addr or self.peer or self.server
        try:
            self.udp.sendto(data, dest)
        except OSError as exc:
            raise ConnectError(f"send to {dest} failed: {exc}") from exc
        self.metrics.packets_sent += 1
        logging.debug("sent %d bytes to %s", len(data), dest)

    def _notify_peer(self, notice: Error) -> None:
        if self.peer is not None:
            self._notify(notice, self.peer)

    def _notify(self, notice: Error, addr: Address) -> None:
        # error notices are best-effort; a failed one never ends the transfer
        try:
            self.udp.sendto(notice.to_bytes(), addr)
        except OSError as exc:
            logging.debug("could not send error notice to %s: %s", addr, exc)
            return
        self.metrics.packets_sent += 1

    def _abort(self, reason: str) -> ProtocolError:
        logging.warning("protocol error: %s", reason)
        self._notify_peer(Error.from_code(ErrorCode.ILLEGAL_OPERATION))
        return ProtocolError(reason)

    def _local_failure(self, exc: OSError, action: str) -> TransferIOError:
        if exc.errno == errno.ENOSPC:
            notice = Error.from_code(ErrorCode.DISK_FULL)
        else:
            notice = Error.from_code(ErrorCode.NOT_DEFINED, exc.strerror or str(exc))
        self._notify_peer(notice)
        return TransferIOError(f"cannot {action} {self.filename!r}: {exc}")

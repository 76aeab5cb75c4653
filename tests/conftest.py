from __future__ import annotations

import socket
import threading
import time
from collections import deque
from pathlib import Path

import pytest

from tftpc.packet import Ack, Data, Error, ErrorCode, ReadRequest, WriteRequest, decode

SERVER = ("192.0.2.1", 69)
PEER = ("192.0.2.1", 40001)

TIMEOUT = object()


class ScriptedChannel:
    """In-memory stand-in for UdpEndpoint.

    ``replies`` are handed out one per ``recvfrom`` call; ``TIMEOUT`` entries
    and an exhausted script both raise ``TimeoutError``. Each call records the
    timeout it was given and then lets ``elapse`` seconds pass.
    """

    def __init__(self, replies=(), elapse: float = 0.0):
        self.replies = deque(replies)
        self.elapse = elapse
        self.sent: list[tuple[bytes, tuple]] = []
        self.bufsizes: list[int] = []
        self.timeouts: list[float | None] = []

    def sendto(self, data: bytes, addr) -> int:
        self.sent.append((data, addr))
        return len(data)

    def recvfrom(self, bufsize: int = 65535, timeout: float | None = None):
        self.bufsizes.append(bufsize)
        self.timeouts.append(timeout)
        if self.elapse:
            time.sleep(self.elapse)
        if not self.replies:
            raise TimeoutError("script exhausted")
        item = self.replies.popleft()
        if item is TIMEOUT:
            raise TimeoutError("scripted timeout")
        data, addr = item
        return data[:bufsize], addr

    def sent_messages(self):
        return [decode(data) for data, _ in self.sent]


def from_peer(msg, addr=PEER):
    return msg.to_bytes(), addr


class LoopbackServer(threading.Thread):
    """Single-transfer TFTP server on 127.0.0.1 serving files from ``root``.

    Replies come from a fresh ephemeral socket, like a real server.
    """

    def __init__(self, root: Path, block_size: int = 512, timeout: float = 2.0, attempts: int = 5):
        super().__init__(daemon=True)
        self.root = root
        self.block_size = block_size
        self.timeout = timeout
        self.attempts = attempts
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(5.0)
        self.port = self.sock.getsockname()[1]
        self.request = None
        self.transfer_port = None

    def run(self) -> None:
        try:
            raw, client = self.sock.recvfrom(1024)
        except TimeoutError:
            self.sock.close()
            return
        self.request = decode(raw)
        xfer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        xfer.bind(("127.0.0.1", 0))
        xfer.settimeout(self.timeout)
        self.transfer_port = xfer.getsockname()[1]
        try:
            if isinstance(self.request, ReadRequest):
                self._serve_read(xfer, client, self.request.filename)
            elif isinstance(self.request, WriteRequest):
                self._serve_write(xfer, client, self.request.filename)
        except TimeoutError:
            pass
        finally:
            xfer.close()
            self.sock.close()

    def _serve_read(self, xfer: socket.socket, client, filename: str) -> None:
        path = self.root / filename
        if not path.exists():
            xfer.sendto(Error.from_code(ErrorCode.FILE_NOT_FOUND).to_bytes(), client)
            return
        content = path.read_bytes()
        block = 1
        offset = 0
        while True:
            chunk = content[offset : offset + self.block_size]
            packet = Data(block, chunk).to_bytes()
            for _ in range(self.attempts):
                xfer.sendto(packet, client)
                try:
                    raw, _ = xfer.recvfrom(1024)
                except TimeoutError:
                    continue
                reply = decode(raw)
                if isinstance(reply, Ack) and reply.block == block:
                    break
            else:
                return
            offset += len(chunk)
            block = (block + 1) & 0xFFFF
            if len(chunk) < self.block_size:
                return

    def _serve_write(self, xfer: socket.socket, client, filename: str) -> None:
        received = bytearray()
        expected = 1
        xfer.sendto(Ack(0).to_bytes(), client)
        while True:
            raw, _ = xfer.recvfrom(self.block_size + 4)
            msg = decode(raw)
            if isinstance(msg, Data) and msg.block == expected:
                received += msg.payload
                xfer.sendto(Ack(expected).to_bytes(), client)
                expected = (expected + 1) & 0xFFFF
                if len(msg.payload) < self.block_size:
                    (self.root / filename).write_bytes(bytes(received))
                    return
            else:
                xfer.sendto(Ack(expected - 1).to_bytes(), client)


@pytest.fixture
def server_root(tmp_path: Path) -> Path:
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def tftp_server(server_root: Path):
    server = LoopbackServer(server_root)
    server.start()
    yield server
    server.join(timeout=10.0)

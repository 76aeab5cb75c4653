from __future__ import annotations

import random
import socket
import time
from dataclasses import dataclass
from typing import Any, Tuple

from .errors import ConnectError

Address = Tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0

    def should_drop(self) -> bool:
        return random.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


def resolve(hostname: str, port: int) -> Tuple[int, Address]:
    """Return (address family, socket address) of the first match for hostname."""
    try:
        infos = socket.getaddrinfo(hostname, port, socket.AF_UNSPEC, socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ConnectError(f"cannot resolve {hostname!r}: {exc}") from exc
    if not infos:
        raise ConnectError(f"cannot resolve {hostname!r}")
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def for_family(
        cls,
        family: int = socket.AF_INET,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        try:
            sock = socket.socket(family, socket.SOCK_DGRAM)
        except OSError as exc:
            raise ConnectError(f"cannot create socket: {exc}") from exc
        return cls(sock, impairment)

    @classmethod
    def connect(
        cls,
        hostname: str,
        port: int,
        impairment: Impairment | None = None,
    ) -> Tuple["UdpEndpoint", Address]:
        family, addr = resolve(hostname, port)
        return cls.for_family(family, impairment), addr

    def sendto(self, data: bytes, addr: Address) -> int:
        if self.impairment.should_drop():
            return len(data)
        self.impairment.sleep_if_needed()
        return self.sock.sendto(data, addr)

    def recvfrom(self, bufsize: int = 65535, timeout: float | None = None) -> Tuple[bytes, Address]:
        """Wait for one datagram; raises TimeoutError once ``timeout`` seconds pass."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("receive timed out")
                self.sock.settimeout(remaining)
            else:
                self.sock.settimeout(None)
            data, addr = self.sock.recvfrom(bufsize)
            if self.impairment.should_drop():
                continue
            self.impairment.sleep_if_needed()
            return data, addr

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

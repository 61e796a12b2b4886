from __future__ import annotations

import random
import socket
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from .constants import MAX_DATAGRAM, RECV_BUFSIZE

Address = Tuple[str, int]

# one byte past the largest legal DATA, so an oversized payload shows up as
# malformed instead of being silently truncated by the kernel
TRANSFER_BUFSIZE = MAX_DATAGRAM + 1


@dataclass(frozen=True, slots=True)
class Impairment:
    """Simulated loss and delay, applied to datagrams in both directions."""

    loss_rate: float = 0.0
    delay_ms: int = 0

    def lost(self) -> bool:
        return self.loss_rate > 0 and random.random() < self.loss_rate

    def delay(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    """One UDP socket: the well-known request port, a session's TID, or a client."""

    def __init__(
        self,
        sock: socket.socket,
        impairment: Impairment | None = None,
        bufsize: int = TRANSFER_BUFSIZE,
    ):
        self.sock = sock
        self.impairment = impairment or Impairment()
        self.bufsize = bufsize

    @classmethod
    def bind(
        cls,
        host: str,
        port: int,
        impairment: Impairment | None = None,
        bufsize: int = RECV_BUFSIZE,
    ) -> "UdpEndpoint":
        """Bind ``host:port``; port 0 asks the OS for an ephemeral transfer ID."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, port))
        return cls(sock, impairment, bufsize)

    @classmethod
    def ephemeral(cls, host: str, impairment: Impairment | None = None) -> "UdpEndpoint":
        return cls.bind(host, 0, impairment, TRANSFER_BUFSIZE)

    @classmethod
    def client(cls, timeout_ms: int, impairment: Impairment | None = None) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, impairment, TRANSFER_BUFSIZE)

    @property
    def address(self) -> Address:
        host, port = self.sock.getsockname()[:2]
        return host, port

    def settimeout(self, seconds: Optional[float]) -> None:
        self.sock.settimeout(seconds)

    def sendto(self, data: bytes, addr: Address) -> None:
        if self.impairment.lost():
            return
        self.impairment.delay()
        self.sock.sendto(data, addr)

    def recvfrom(self) -> Tuple[bytes, Address]:
        while True:
            data, addr = self.sock.recvfrom(self.bufsize)
            if self.impairment.lost():
                continue
            self.impairment.delay()
            return data, (addr[0], addr[1])

    def close(self) -> None:
        self.sock.close()

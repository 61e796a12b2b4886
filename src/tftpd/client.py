from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional, Tuple

from .constants import (
    BLOCK_MODULUS,
    BLOCK_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_MS,
    MODE_NETASCII,
    MODE_OCTET,
)
from .net import Address, Impairment, UdpEndpoint
from .packet import (
    AckPacket,
    DataPacket,
    ErrorCode,
    ErrorPacket,
    MalformedPacket,
    Opcode,
    Packet,
    RequestPacket,
    decode,
)
from .storage import FileSource, NetasciiDecoder

logger = logging.getLogger(__name__)


class TransferError(Exception):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransferTimeout(TransferError):
    pass


@dataclass(slots=True)
class TransferStats:
    bytes_transferred: int = 0
    blocks: int = 0
    timeouts: int = 0
    retransmits: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)


@dataclass(slots=True)
class TftpClient:
    """Stop-and-wait TFTP client for single-file get and put."""

    host: str
    port: int = DEFAULT_PORT
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    mode: str = MODE_OCTET
    impairment: Impairment | None = None

    def _request(self, opcode: Opcode, name: str) -> bytes:
        return RequestPacket(opcode, name.encode("utf-8"), self.mode.encode("ascii")).to_bytes()

    def download(self, name: str, out: BinaryIO) -> TransferStats:
        stats = TransferStats()
        decoder = NetasciiDecoder() if self.mode == MODE_NETASCII else None
        udp = UdpEndpoint.client(self.timeout_ms, self.impairment)
        try:
            outgoing = self._request(Opcode.RRQ, name)
            peer: Optional[Address] = None
            expected = 1
            while True:
                block = expected % BLOCK_MODULUS
                packet, addr = self._await(
                    udp,
                    outgoing,
                    peer or (self.host, self.port),
                    peer,
                    stats,
                    lambda p: isinstance(p, DataPacket) and p.block == block,
                    resend_on_stale=True,
                )
                if not isinstance(packet, DataPacket):
                    raise TransferError(f"unexpected reply {type(packet).__name__}")
                peer = addr
                out.write(decoder.feed(packet.data) if decoder else packet.data)
                stats.bytes_transferred += len(packet.data)
                stats.blocks += 1
                outgoing = AckPacket(packet.block).to_bytes()
                if packet.is_last:
                    udp.sendto(outgoing, peer)
                    break
                expected += 1
            if decoder is not None:
                out.write(decoder.flush())
        finally:
            udp.close()
        stats.end_ts = time.monotonic()
        logger.info("received %s: %d bytes in %d blocks", name, stats.bytes_transferred, stats.blocks)
        return stats

    def upload(self, name: str, src: BinaryIO) -> TransferStats:
        stats = TransferStats()
        source = FileSource(src, netascii=self.mode == MODE_NETASCII, name=name)
        udp = UdpEndpoint.client(self.timeout_ms, self.impairment)
        try:
            _, peer = self._await(
                udp,
                self._request(Opcode.WRQ, name),
                (self.host, self.port),
                None,
                stats,
                lambda p: isinstance(p, AckPacket) and p.block == 0,
            )
            block = 0
            while True:
                data = source.read(BLOCK_SIZE)
                block += 1
                wire_block = block % BLOCK_MODULUS
                self._await(
                    udp,
                    DataPacket(wire_block, data).to_bytes(),
                    peer,
                    peer,
                    stats,
                    lambda p: isinstance(p, AckPacket) and p.block == wire_block,
                )
                stats.bytes_transferred += len(data)
                stats.blocks += 1
                if len(data) < BLOCK_SIZE:
                    break
        finally:
            udp.close()
        stats.end_ts = time.monotonic()
        logger.info("sent %s: %d bytes in %d blocks", name, stats.bytes_transferred, stats.blocks)
        return stats

    def _await(
        self,
        udp: UdpEndpoint,
        outgoing: bytes,
        dest: Address,
        peer: Optional[Address],
        stats: TransferStats,
        wanted: Callable[[Packet], bool],
        resend_on_stale: bool = False,
    ) -> Tuple[Packet, Address]:
        """Send ``outgoing`` and wait for a wanted reply, retransmitting on timeout.

        Datagrams from any host other than the locked-on ``peer`` are answered
        with UNKNOWN_TID and otherwise ignored.
        """
        retries = 0
        udp.sendto(outgoing, dest)
        while True:
            try:
                raw, addr = udp.recvfrom()
            except TimeoutError:
                stats.timeouts += 1
                retries += 1
                if retries > self.max_retries:
                    raise TransferTimeout(f"no response from {dest[0]}:{dest[1]} after {self.max_retries} retries")
                logger.debug("timeout; retransmitting (retry %d)", retries)
                stats.retransmits += 1
                udp.sendto(outgoing, dest)
                continue

            if peer is not None and addr != peer:
                logger.warning("datagram from unknown TID %s:%d", *addr)
                udp.sendto(ErrorPacket.make(ErrorCode.UNKNOWN_TID).to_bytes(), addr)
                continue

            try:
                packet = decode(raw)
            except MalformedPacket as exc:
                logger.debug("dropping malformed datagram: %s", exc)
                continue

            if isinstance(packet, ErrorPacket):
                raise TransferError(f"server error {packet.code}: {packet.text}", code=packet.code)
            if wanted(packet):
                return packet, addr
            if resend_on_stale:
                stats.retransmits += 1
                udp.sendto(outgoing, dest)

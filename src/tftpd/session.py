"""Per-transfer state machines.

A session never touches a socket directly: it is handed a ``send`` callable
and is fed decoded packets (``handle``) and timer ticks (``expire``) by
whoever owns the transport. Both entry points take the session lock, so a
late timer tick can never race an ACK that already moved the transfer on.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .constants import (
    BLOCK_MODULUS,
    BLOCK_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_MS,
    MODE_MAIL,
    MODE_NETASCII,
    MODE_OCTET,
)
from .net import Address
from .packet import AckPacket, DataPacket, ErrorCode, ErrorPacket, Packet, RequestPacket
from .storage import AccessDenied, AccessPolicy, DataSink, DataSource, StorageError, Store

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
SendFn = Callable[[bytes, Address], None]


@dataclass(frozen=True, slots=True)
class SessionConfig:
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0


class Outcome(enum.Enum):
    ACTIVE = "active"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


class RetransmitTimer:
    def __init__(self, timeout_s: float, clock: Clock = time.monotonic):
        self.timeout_s = timeout_s
        self._clock = clock
        self._deadline: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    def arm(self) -> None:
        self._deadline = self._clock() + self.timeout_s

    def cancel(self) -> None:
        self._deadline = None

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline


class Session:
    kind = "transfer"

    def __init__(
        self,
        request: RequestPacket,
        peer: Address,
        send: SendFn,
        store: Store,
        policy: AccessPolicy,
        config: SessionConfig = SessionConfig(),
        clock: Clock = time.monotonic,
    ):
        self.request = request
        self.peer = peer
        self.store = store
        self.policy = policy
        self.config = config
        self.timer = RetransmitTimer(config.timeout_s, clock)
        self.lock = threading.Lock()
        self.outcome = Outcome.ACTIVE
        self.block = 0
        self.retries = 0
        self.retransmits = 0
        self.bytes_transferred = 0
        self.last_sent: Optional[bytes] = None
        self._send = send
        self._on_finish: List[Callable[["Session"], None]] = []

    def __repr__(self) -> str:
        host, port = self.peer
        return f"<{type(self).__name__} {self.name!r} {host}:{port} {self.outcome.value}>"

    @property
    def name(self) -> str:
        return self.request.name

    @property
    def mode(self) -> str:
        return self.request.normalized_mode

    @property
    def finished(self) -> bool:
        return self.outcome is not Outcome.ACTIVE

    def add_finish_callback(self, callback: Callable[["Session"], None]) -> None:
        self._on_finish.append(callback)

    def start(self) -> None:
        with self.lock:
            if self.finished:
                return
            code = self._mode_error()
            if code is not None:
                self._fail(code, f"unsupported transfer mode {self.mode!r}")
                return
            logger.info("%s %s from %s:%d (%s)", self.kind, self.name, *self.peer, self.mode)
            self._guard(self._open)

    def handle(self, packet: Packet, addr: Address) -> None:
        with self.lock:
            if addr != self.peer:
                logger.warning("datagram from unknown TID %s:%d for %r", *addr, self)
                self._send_best_effort(ErrorPacket.make(ErrorCode.UNKNOWN_TID), addr)
                return
            if self.finished:
                logger.debug("%r: dropping %s after termination", self, type(packet).__name__)
                return
            if isinstance(packet, ErrorPacket):
                logger.info("%r: peer sent error %d: %s", self, packet.code, packet.text)
                self._finish(Outcome.FAILED)
                return
            self._guard(self._receive, packet)

    def expire(self) -> None:
        with self.lock:
            if self.finished or not self.timer.expired():
                return
            self.retries += 1
            if self.retries > self.config.max_retries:
                logger.warning("%r: no response after %d retries, abandoning", self, self.config.max_retries)
                self._finish(Outcome.ABORTED)
                return
            logger.debug("%r: timeout, retransmitting (retry %d)", self, self.retries)
            self.retransmits += 1
            self._guard(self._retransmit)

    def abort(self) -> None:
        with self.lock:
            if not self.finished:
                self._finish(Outcome.ABORTED)

    def _guard(self, step: Callable[..., None], *args) -> None:
        try:
            step(*args)
        except StorageError as exc:
            self._fail(exc.code, str(exc))
        except OSError as exc:
            logger.error("%r: transport failure: %s", self, exc)
            self._finish(Outcome.ABORTED)

    def _mode_error(self) -> Optional[ErrorCode]:
        if self.mode in (MODE_OCTET, MODE_NETASCII):
            return None
        if self.mode == MODE_MAIL and not self.request.is_read:
            return ErrorCode.NO_SUCH_USER
        return ErrorCode.ILLEGAL_OPERATION

    def _open(self) -> None:
        raise NotImplementedError

    def _receive(self, packet: Packet) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        pass

    def _transmit(self, packet: Packet, arm: bool = True) -> None:
        raw = packet.to_bytes()
        self.last_sent = raw
        self._send(raw, self.peer)
        if arm:
            self.timer.arm()

    def _retransmit(self) -> None:
        self._resend()
        self.timer.arm()

    def _resend(self) -> None:
        if self.last_sent is not None:
            self._send(self.last_sent, self.peer)

    def _progress(self) -> None:
        self.timer.cancel()
        self.retries = 0

    def _illegal(self, packet: Packet) -> None:
        self._fail(ErrorCode.ILLEGAL_OPERATION, f"unexpected {type(packet).__name__} during {self.kind}")

    def _fail(self, code: ErrorCode, message: Optional[str] = None) -> None:
        logger.info("%r: terminating with error %d (%s)", self, code, message or code.default_message)
        self._send_best_effort(ErrorPacket.make(code, message), self.peer)
        self._finish(Outcome.FAILED)

    def _send_best_effort(self, packet: ErrorPacket, addr: Address) -> None:
        try:
            self._send(packet.to_bytes(), addr)
        except OSError as exc:
            logger.warning("could not send error to %s:%d: %s", *addr, exc)

    def _finish(self, outcome: Outcome) -> None:
        self.outcome = outcome
        self.timer.cancel()
        try:
            self._release()
        except (StorageError, OSError) as exc:
            logger.error("%r: releasing %s failed: %s", self, self.name, exc)
        logger.info("%r: %d bytes, %d retransmits", self, self.bytes_transferred, self.retransmits)
        for callback in self._on_finish:
            callback(self)


class ReadSession(Session):
    """Server sends the file: DATA n, wait for ACK n, repeat until a short block."""

    kind = "RRQ"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.source: Optional[DataSource] = None
        self._last_length = 0

    def _open(self) -> None:
        if not self.policy.can_read(self.name):
            raise AccessDenied(f"read not permitted: {self.name}")
        self.source = self.store.open_source(self.name, self.mode)
        self.block = 1
        self._send_block()

    def _send_block(self) -> None:
        if self.source is None:
            raise RuntimeError(f"{self!r} has no open source")
        data = self.source.read(BLOCK_SIZE)
        self._last_length = len(data)
        self.bytes_transferred += len(data)
        logger.debug("%r: DATA %d (%d bytes)", self, self.block, len(data))
        self._transmit(DataPacket(self.block % BLOCK_MODULUS, data))

    def _receive(self, packet: Packet) -> None:
        if not isinstance(packet, AckPacket):
            self._illegal(packet)
            return
        if packet.block != self.block % BLOCK_MODULUS:
            # stale or duplicate ACK; the timer alone drives retransmission
            logger.debug("%r: ignoring ACK %d, waiting for %d", self, packet.block, self.block % BLOCK_MODULUS)
            return
        self._progress()
        if self._last_length < BLOCK_SIZE:
            self._finish(Outcome.COMPLETE)
            return
        self.block += 1
        self._send_block()

    def _release(self) -> None:
        if self.source is not None:
            self.source.close()


class WriteSession(Session):
    """Server receives the file: ACK 0, then ACK each DATA n until a short block."""

    kind = "WRQ"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sink: Optional[DataSink] = None
        self._finalized = False

    def _open(self) -> None:
        if not self.policy.can_write(self.name):
            raise AccessDenied(f"write not permitted: {self.name}")
        self.sink = self.store.open_sink(self.name, self.mode)
        self.block = 0
        self._transmit(AckPacket(0))

    def _receive(self, packet: Packet) -> None:
        if not isinstance(packet, DataPacket):
            self._illegal(packet)
            return
        if self.sink is None:
            raise RuntimeError(f"{self!r} has no open sink")
        expected = (self.block + 1) % BLOCK_MODULUS
        if packet.block != expected:
            # Re-acknowledge the last block we accepted; nothing is written twice.
            logger.debug("%r: DATA %d while expecting %d, re-sending last ACK", self, packet.block, expected)
            self._resend()
            return
        self._progress()
        self.sink.append(packet.data)
        self.block += 1
        self.bytes_transferred += len(packet.data)
        logger.debug("%r: ACK %d (%d bytes)", self, expected, len(packet.data))
        if packet.is_last:
            self.sink.finalize()
            self._finalized = True
            self._transmit(AckPacket(expected), arm=False)
            self._finish(Outcome.COMPLETE)
        else:
            self._transmit(AckPacket(expected))

    def _release(self) -> None:
        if self.sink is not None and not self._finalized:
            self.sink.abort()


def create_session(
    request: RequestPacket,
    peer: Address,
    send: SendFn,
    store: Store,
    policy: AccessPolicy,
    config: SessionConfig = SessionConfig(),
    clock: Clock = time.monotonic,
) -> Session:
    cls = ReadSession if request.is_read else WriteSession
    return cls(request, peer, send, store, policy, config, clock)

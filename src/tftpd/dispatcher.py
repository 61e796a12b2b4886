from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .net import Address, UdpEndpoint
from .packet import ErrorCode, ErrorPacket, MalformedPacket, Opcode, RequestPacket, decode, peek_opcode
from .session import Clock, Session, SessionConfig, create_session
from .storage import AccessPolicy, Store

logger = logging.getLogger(__name__)

IDLE_POLL_S = 0.5

EndpointFactory = Callable[[], UdpEndpoint]


class SessionTable:
    """Live sessions keyed by the peer's (host, port)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[Address, Session] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, addr: Address) -> bool:
        with self._lock:
            return addr in self._sessions

    def get(self, addr: Address) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(addr)

    def insert(self, session: Session) -> bool:
        with self._lock:
            if session.peer in self._sessions:
                return False
            self._sessions[session.peer] = session
            return True

    def remove(self, session: Session) -> None:
        with self._lock:
            if self._sessions.get(session.peer) is session:
                del self._sessions[session.peer]

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())


class SessionWorker(threading.Thread):
    """Drives one session from its own ephemeral-port socket."""

    def __init__(self, session: Session, endpoint: UdpEndpoint):
        host, port = endpoint.address
        super().__init__(name=f"tftp-{host}:{port}", daemon=True)
        self.session = session
        self.endpoint = endpoint

    def run(self) -> None:
        try:
            while not self.session.finished:
                remaining = self.session.timer.remaining()
                if remaining is not None and remaining <= 0:
                    self.session.expire()
                    continue
                self.endpoint.settimeout(remaining if remaining is not None else IDLE_POLL_S)
                try:
                    raw, addr = self.endpoint.recvfrom()
                except TimeoutError:
                    self.session.expire()
                    continue
                try:
                    packet = decode(raw)
                except MalformedPacket as exc:
                    logger.warning("dropping malformed datagram from %s:%d: %s", *addr, exc)
                    continue
                self.session.handle(packet, addr)
        except OSError as exc:
            logger.error("%r: socket error: %s", self.session, exc)
            self.session.abort()
        finally:
            self.endpoint.close()


class Dispatcher:
    """Accepts requests on the listening endpoint and routes follow-up datagrams.

    With ``ephemeral_ports`` (the RFC 1350 arrangement) every session answers
    from its own freshly bound port and runs in a ``SessionWorker`` thread.
    Without it, sessions reply from the listening socket and ``serve_forever``
    drives their timers.
    """

    def __init__(
        self,
        endpoint: UdpEndpoint,
        store: Store,
        policy: AccessPolicy,
        config: SessionConfig = SessionConfig(),
        ephemeral_ports: bool = True,
        endpoint_factory: Optional[EndpointFactory] = None,
        clock: Clock = time.monotonic,
    ):
        self.endpoint = endpoint
        self.store = store
        self.policy = policy
        self.config = config
        self.ephemeral_ports = ephemeral_ports
        self.table = SessionTable()
        self._endpoint_factory = endpoint_factory or self._ephemeral_endpoint
        self._clock = clock
        self._workers: Dict[int, SessionWorker] = {}

    def _ephemeral_endpoint(self) -> UdpEndpoint:
        host = self.endpoint.address[0]
        return UdpEndpoint.ephemeral(host, self.endpoint.impairment)

    def dispatch(self, raw: bytes, addr: Address) -> Optional[Session]:
        try:
            opcode = peek_opcode(raw)
        except MalformedPacket as exc:
            logger.warning("dropping malformed datagram from %s:%d: %s", *addr, exc)
            return None

        if opcode in (Opcode.RRQ, Opcode.WRQ):
            return self._accept(raw, addr)

        session = self.table.get(addr)
        if session is None:
            logger.warning("%s from unknown TID %s:%d", opcode.name, *addr)
            self._reply_error(addr, ErrorCode.UNKNOWN_TID)
            return None
        try:
            packet = decode(raw)
        except MalformedPacket as exc:
            logger.warning("dropping malformed %s from %s:%d: %s", opcode.name, *addr, exc)
            return session
        session.handle(packet, addr)
        return session

    def _accept(self, raw: bytes, addr: Address) -> Optional[Session]:
        existing = self.table.get(addr)
        if existing is not None:
            logger.debug("duplicate request from %s:%d ignored", *addr)
            return existing
        try:
            request = decode(raw, RequestPacket)
        except MalformedPacket as exc:
            logger.warning("dropping malformed request from %s:%d: %s", *addr, exc)
            return None

        endpoint: Optional[UdpEndpoint] = None
        if self.ephemeral_ports:
            try:
                endpoint = self._endpoint_factory()
            except OSError as exc:
                logger.error("cannot bind a transfer port for %s:%d: %s", *addr, exc)
                self._reply_error(addr, ErrorCode.UNDEFINED, "no transfer port available")
                return None
            send = endpoint.sendto
        else:
            send = self.endpoint.sendto

        session = create_session(request, addr, send, self.store, self.policy, self.config, self._clock)
        session.add_finish_callback(self._forget)
        self.table.insert(session)
        session.start()

        if endpoint is not None:
            if session.finished:
                endpoint.close()
            else:
                worker = SessionWorker(session, endpoint)
                self._workers[id(session)] = worker
                worker.start()
        return session

    def _forget(self, session: Session) -> None:
        self.table.remove(session)
        self._workers.pop(id(session), None)

    def _reply_error(self, addr: Address, code: ErrorCode, message: Optional[str] = None) -> None:
        try:
            self.endpoint.sendto(ErrorPacket.make(code, message).to_bytes(), addr)
        except OSError as exc:
            logger.warning("could not send error to %s:%d: %s", *addr, exc)

    def next_timeout(self) -> Optional[float]:
        pending = [r for r in (s.timer.remaining() for s in self.table.sessions()) if r is not None]
        return min(pending) if pending else None

    def expire_timers(self) -> None:
        for session in self.table.sessions():
            session.expire()

    def serve_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        host, port = self.endpoint.address
        logger.info("listening on %s:%d", host, port)
        while not stop.is_set():
            timeout = IDLE_POLL_S
            if not self.ephemeral_ports:
                pending = self.next_timeout()
                if pending is not None:
                    timeout = min(timeout, pending)
            # a zero timeout would switch the socket to non-blocking mode
            self.endpoint.settimeout(max(timeout, 0.001))
            try:
                raw, addr = self.endpoint.recvfrom()
            except TimeoutError:
                pass
            except OSError:
                if stop.is_set():
                    break
                raise
            else:
                try:
                    self.dispatch(raw, addr)
                except Exception:
                    logger.exception("error handling datagram from %s:%d", *addr)
            if not self.ephemeral_ports:
                self.expire_timers()

    def shutdown(self, timeout: float = 2.0) -> None:
        for session in self.table.sessions():
            session.abort()
        for worker in list(self._workers.values()):
            worker.join(timeout)

from __future__ import annotations

import io
import threading
from typing import Dict, List, Tuple

import pytest

from tftpd.dispatcher import Dispatcher
from tftpd.net import UdpEndpoint
from tftpd.packet import decode
from tftpd.session import SessionConfig
from tftpd.storage import Directory, FileNotFound, FileSource, Policy

PEER = ("10.0.0.7", 40001)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Wire:
    """Collects what a session sends instead of putting it on a socket."""

    def __init__(self) -> None:
        self.sent: List[Tuple[bytes, Tuple[str, int]]] = []

    def __call__(self, raw: bytes, addr: Tuple[str, int]) -> None:
        self.sent.append((raw, addr))

    @property
    def packets(self):
        return [decode(raw) for raw, _ in self.sent]

    @property
    def last(self):
        return decode(self.sent[-1][0])

    def clear(self) -> None:
        self.sent.clear()


class MemorySink:
    def __init__(self) -> None:
        self.chunks: List[bytes] = []
        self.finalized = False
        self.aborted = False
        self.error: Exception | None = None

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    def append(self, data: bytes) -> None:
        if self.error is not None:
            raise self.error
        self.chunks.append(data)

    def finalize(self) -> None:
        self.finalized = True

    def abort(self) -> None:
        self.aborted = True


class TrackingSource(FileSource):
    def __init__(self, data: bytes):
        super().__init__(io.BytesIO(data))
        self.closed = False

    def close(self) -> None:
        self.closed = True
        super().close()


class MemoryStore:
    def __init__(self, files: Dict[str, bytes] | None = None):
        self.files = dict(files or {})
        self.sources: List[TrackingSource] = []
        self.sinks: Dict[str, MemorySink] = {}

    def open_source(self, name: str, mode: str = "octet") -> TrackingSource:
        if name not in self.files:
            raise FileNotFound(f"file not found: {name}")
        source = TrackingSource(self.files[name])
        self.sources.append(source)
        return source

    def open_sink(self, name: str, mode: str = "octet") -> MemorySink:
        sink = MemorySink()
        self.sinks[name] = sink
        return sink


class FakeEndpoint:
    def __init__(self, address=("127.0.0.1", 69)):
        self.address = address
        self.sent: List[Tuple[bytes, Tuple[str, int]]] = []
        self.closed = False
        self.impairment = None

    def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.sent.append((data, addr))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def config() -> SessionConfig:
    return SessionConfig(timeout_ms=1000, max_retries=3)


@pytest.fixture
def serve(tmp_path):
    """Start a real server on 127.0.0.1 serving ``tmp_path``; returns its port."""
    running = []

    def start(allow_write: bool = True, single_port: bool = False, timeout_ms: int = 200, max_retries: int = 3):
        udp = UdpEndpoint.bind("127.0.0.1", 0)
        dispatcher = Dispatcher(
            udp,
            Directory(str(tmp_path)),
            Policy(allow_read=True, allow_write=allow_write),
            SessionConfig(timeout_ms=timeout_ms, max_retries=max_retries),
            ephemeral_ports=not single_port,
        )
        stop = threading.Event()
        thread = threading.Thread(target=dispatcher.serve_forever, args=(stop,), daemon=True)
        thread.start()
        running.append((dispatcher, stop, thread, udp))
        return udp.address[1]

    yield start

    for dispatcher, stop, thread, udp in running:
        stop.set()
        thread.join(2.0)
        dispatcher.shutdown()
        udp.close()

from __future__ import annotations

import os
import threading

import pytest

from conftest import FakeEndpoint, MemoryStore
from tftpd.dispatcher import Dispatcher, SessionTable
from tftpd.packet import AckPacket, DataPacket, ErrorCode, Opcode, RequestPacket, decode, encode
from tftpd.session import Outcome
from tftpd.storage import FileSink, Policy

CLIENT = ("192.0.2.10", 50000)
OTHER = ("192.0.2.11", 50001)
FILES = {"video.avi": b"v" * 1000, "tiny.txt": b"hi"}


def make(clock, config, **kwargs):
    endpoint = FakeEndpoint()
    store = MemoryStore(FILES)
    dispatcher = Dispatcher(
        endpoint, store, Policy(allow_write=True), config, ephemeral_ports=False, clock=clock, **kwargs
    )
    return dispatcher, endpoint, store


def rrq(name: bytes = b"video.avi") -> bytes:
    return encode(RequestPacket(Opcode.RRQ, name, b"octet"))


def sent(endpoint):
    return [(decode(raw), addr) for raw, addr in endpoint.sent]


def test_request_creates_and_registers_session(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    session = dispatcher.dispatch(rrq(), CLIENT)
    assert session is not None
    assert dispatcher.table.get(CLIENT) is session
    assert sent(endpoint) == [(DataPacket(1, FILES["video.avi"][:512]), CLIENT)]


def test_followup_is_routed_by_source_address(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(), CLIENT)
    dispatcher.dispatch(encode(AckPacket(1)), CLIENT)
    assert sent(endpoint)[-1] == (DataPacket(2, FILES["video.avi"][512:]), CLIENT)


def test_finished_session_is_removed(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    session = dispatcher.dispatch(rrq(b"tiny.txt"), CLIENT)
    dispatcher.dispatch(encode(AckPacket(1)), CLIENT)
    assert session.outcome is Outcome.COMPLETE
    assert CLIENT not in dispatcher.table
    assert len(dispatcher.table) == 0


def test_failed_request_leaves_no_entry(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(b"missing.bin"), CLIENT)
    (packet, addr), = sent(endpoint)
    assert packet.code == ErrorCode.FILE_NOT_FOUND
    assert len(dispatcher.table) == 0


def test_unknown_tid(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(), CLIENT)
    assert dispatcher.dispatch(encode(AckPacket(1)), OTHER) is None
    packet, addr = sent(endpoint)[-1]
    assert addr == OTHER
    assert packet.code == ErrorCode.UNKNOWN_TID
    assert dispatcher.table.get(CLIENT).block == 1


def test_same_host_other_port_is_a_different_tid(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(), CLIENT)
    dispatcher.dispatch(encode(AckPacket(1)), (CLIENT[0], CLIENT[1] + 1))
    assert sent(endpoint)[-1][0].code == ErrorCode.UNKNOWN_TID


def test_malformed_datagrams_are_dropped_silently(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    for raw in (b"", b"\x01", b"\x00\x63junk", b"\x00\x01noterminator"):
        assert dispatcher.dispatch(raw, CLIENT) is None
    assert endpoint.sent == []
    assert len(dispatcher.table) == 0


def test_duplicate_request_does_not_restart_transfer(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    first = dispatcher.dispatch(rrq(), CLIENT)
    again = dispatcher.dispatch(rrq(), CLIENT)
    assert again is first
    assert len(endpoint.sent) == 1


def test_timers_are_driven_by_dispatcher(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(), CLIENT)
    assert dispatcher.next_timeout() == 1.0
    clock.advance(1.0)
    dispatcher.expire_timers()
    assert endpoint.sent[0] == endpoint.sent[1]


def test_abandoned_session_is_removed(clock, config):
    dispatcher, endpoint, _ = make(clock, config)
    dispatcher.dispatch(rrq(), CLIENT)
    for _ in range(config.max_retries + 1):
        clock.advance(1.0)
        dispatcher.expire_timers()
    assert len(dispatcher.table) == 0
    assert dispatcher.next_timeout() is None


def test_write_request(clock, config):
    dispatcher, endpoint, store = make(clock, config)
    dispatcher.dispatch(encode(RequestPacket(Opcode.WRQ, b"up.bin", b"octet")), CLIENT)
    dispatcher.dispatch(encode(DataPacket(1, b"payload")), CLIENT)
    assert [p for p, _ in sent(endpoint)] == [AckPacket(0), AckPacket(1)]
    assert store.sinks["up.bin"].data == b"payload"
    assert len(dispatcher.table) == 0


def test_ephemeral_endpoint_closed_when_request_fails(clock, config):
    endpoints = []

    def factory():
        endpoints.append(FakeEndpoint(("127.0.0.1", 40000 + len(endpoints))))
        return endpoints[-1]

    dispatcher = Dispatcher(
        FakeEndpoint(), MemoryStore(FILES), Policy(), config, endpoint_factory=factory, clock=clock
    )
    dispatcher.dispatch(rrq(b"missing.bin"), CLIENT)
    (endpoint,) = endpoints
    assert decode(endpoint.sent[0][0]).code == ErrorCode.FILE_NOT_FOUND
    assert endpoint.closed
    assert len(dispatcher.table) == 0


def test_session_table_remove_only_matching_session(clock, config):
    dispatcher, _, _ = make(clock, config)
    first = dispatcher.dispatch(rrq(), CLIENT)
    table = SessionTable()
    assert table.insert(first)
    assert not table.insert(first)
    table.remove(first)
    assert table.sessions() == []


class FullDiskStore:
    """Sinks whose writes land on /dev/full."""

    def __init__(self, root):
        self.root = root

    def open_sink(self, name, mode="octet"):
        sink = FileSink(os.path.join(self.root, name), name=name)
        sink._file.close()
        sink._file = open("/dev/full", "wb")
        return sink


@pytest.mark.skipif(not os.path.exists("/dev/full"), reason="needs /dev/full")
def test_disk_full_upload_reports_error_and_frees_peer(tmp_path, clock, config):
    endpoint = FakeEndpoint()
    dispatcher = Dispatcher(
        endpoint, FullDiskStore(str(tmp_path)), Policy(allow_write=True), config, ephemeral_ports=False, clock=clock
    )
    wrq = encode(RequestPacket(Opcode.WRQ, b"big.bin", b"octet"))
    session = dispatcher.dispatch(wrq, CLIENT)
    for block in range(1, 40):
        dispatcher.dispatch(encode(DataPacket(block, b"d" * 512)), CLIENT)
        if session.finished:
            break

    assert session.outcome is Outcome.FAILED
    assert sent(endpoint)[-1][0].code == ErrorCode.DISK_FULL
    assert len(dispatcher.table) == 0
    assert os.listdir(tmp_path) == []

    again = dispatcher.dispatch(wrq, CLIENT)
    assert again is not session
    assert sent(endpoint)[-1][0] == AckPacket(0)


class ScriptedEndpoint(FakeEndpoint):
    def __init__(self, datagrams, stop):
        super().__init__()
        self.datagrams = list(datagrams)
        self.stop = stop

    def settimeout(self, seconds):
        pass

    def recvfrom(self):
        if not self.datagrams:
            self.stop.set()
            raise TimeoutError
        return self.datagrams.pop(0), CLIENT


def test_serve_forever_survives_a_failing_datagram(clock, config):
    stop = threading.Event()
    endpoint = ScriptedEndpoint([b"boom", rrq(b"tiny.txt")], stop)
    dispatcher = Dispatcher(
        endpoint, MemoryStore(FILES), Policy(), config, ephemeral_ports=False, clock=clock
    )
    handled = []
    real_dispatch = dispatcher.dispatch

    def dispatch(raw, addr):
        handled.append(raw)
        if raw == b"boom":
            raise RuntimeError("handler failure")
        return real_dispatch(raw, addr)

    dispatcher.dispatch = dispatch
    dispatcher.serve_forever(stop)
    assert handled == [b"boom", rrq(b"tiny.txt")]
    assert sent(endpoint) == [(DataPacket(1, b"hi"), CLIENT)]

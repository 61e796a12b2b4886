from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional, Type, Union

from .constants import ACK, BLOCK_SIZE, DATA, ERROR, HEADER_SIZE, RRQ, WRQ

OPCODE_FORMAT = "!H"
HEADER_FORMAT = "!HH"  # opcode, block number or error code


class MalformedPacket(ValueError):
    pass


class Opcode(enum.IntEnum):
    RRQ = RRQ
    WRQ = WRQ
    DATA = DATA
    ACK = ACK
    ERROR = ERROR


class ErrorCode(enum.IntEnum):
    UNDEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7

    @property
    def default_message(self) -> str:
        return _DEFAULT_MESSAGES[self]


_DEFAULT_MESSAGES = {
    ErrorCode.UNDEFINED: "Not defined",
    ErrorCode.FILE_NOT_FOUND: "File not found",
    ErrorCode.ACCESS_VIOLATION: "Access violation",
    ErrorCode.DISK_FULL: "Disk full or allocation exceeded",
    ErrorCode.ILLEGAL_OPERATION: "Illegal TFTP operation",
    ErrorCode.UNKNOWN_TID: "Unknown transfer ID",
    ErrorCode.FILE_EXISTS: "File already exists",
    ErrorCode.NO_SUCH_USER: "No such user",
}


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} out of range: {value}")


@dataclass(frozen=True, slots=True)
class RequestPacket:
    opcode: Opcode
    filename: bytes
    mode: bytes = b"octet"

    @property
    def is_read(self) -> bool:
        return self.opcode == Opcode.RRQ

    @property
    def normalized_mode(self) -> str:
        return self.mode.decode("ascii", errors="replace").lower()

    @property
    def name(self) -> str:
        return self.filename.decode("utf-8", errors="replace")

    def to_bytes(self) -> bytes:
        if self.opcode not in (Opcode.RRQ, Opcode.WRQ):
            raise ValueError(f"not a request opcode: {self.opcode}")
        return (
            struct.pack(OPCODE_FORMAT, int(self.opcode))
            + self.filename
            + b"\x00"
            + self.mode
            + b"\x00"
        )

    @staticmethod
    def from_bytes(raw: bytes) -> "RequestPacket":
        opcode = _opcode_of(raw)
        if opcode not in (Opcode.RRQ, Opcode.WRQ):
            raise MalformedPacket(f"expected RRQ or WRQ, got {opcode.name}")
        fields = bytes(raw[2:]).split(b"\x00")
        # filename, mode, [option, value]..., and the empty tail after the last NUL
        if len(fields) < 3 or fields[-1] != b"":
            raise MalformedPacket("request fields are not NUL-terminated")
        filename, mode = fields[0], fields[1]
        if not filename or not mode:
            raise MalformedPacket("empty filename or mode")
        return RequestPacket(opcode=opcode, filename=filename, mode=mode)


@dataclass(frozen=True, slots=True)
class DataPacket:
    block: int
    data: bytes = b""

    @property
    def is_last(self) -> bool:
        return len(self.data) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        _check_u16("block number", self.block)
        if len(self.data) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.data)}")
        return struct.pack(HEADER_FORMAT, DATA, self.block) + self.data

    @staticmethod
    def from_bytes(raw: bytes) -> "DataPacket":
        block = _header_of(raw, Opcode.DATA)
        payload = bytes(raw[HEADER_SIZE:])
        if len(payload) > BLOCK_SIZE:
            raise MalformedPacket(f"payload too large: {len(payload)}")
        return DataPacket(block=block, data=payload)


@dataclass(frozen=True, slots=True)
class AckPacket:
    block: int

    def to_bytes(self) -> bytes:
        _check_u16("block number", self.block)
        return struct.pack(HEADER_FORMAT, ACK, self.block)

    @staticmethod
    def from_bytes(raw: bytes) -> "AckPacket":
        return AckPacket(block=_header_of(raw, Opcode.ACK))


@dataclass(frozen=True, slots=True)
class ErrorPacket:
    code: int
    message: bytes = b""

    @property
    def text(self) -> str:
        return self.message.decode("utf-8", errors="replace")

    def to_bytes(self) -> bytes:
        _check_u16("error code", self.code)
        return struct.pack(HEADER_FORMAT, ERROR, self.code) + self.message + b"\x00"

    @staticmethod
    def from_bytes(raw: bytes) -> "ErrorPacket":
        code = _header_of(raw, Opcode.ERROR)
        message = bytes(raw[HEADER_SIZE:])
        if message.endswith(b"\x00"):
            message = message[:-1]
        return ErrorPacket(code=code, message=message)

    @staticmethod
    def make(code: ErrorCode, message: Optional[str] = None) -> "ErrorPacket":
        text = message if message is not None else code.default_message
        return ErrorPacket(code=int(code), message=text.encode("utf-8", errors="replace"))


Packet = Union[RequestPacket, DataPacket, AckPacket, ErrorPacket]

_DECODERS = {
    Opcode.RRQ: RequestPacket.from_bytes,
    Opcode.WRQ: RequestPacket.from_bytes,
    Opcode.DATA: DataPacket.from_bytes,
    Opcode.ACK: AckPacket.from_bytes,
    Opcode.ERROR: ErrorPacket.from_bytes,
}


def _opcode_of(raw: bytes) -> Opcode:
    if len(raw) < 2:
        raise MalformedPacket("datagram too small to carry an opcode")
    (value,) = struct.unpack_from(OPCODE_FORMAT, raw)
    try:
        return Opcode(value)
    except ValueError:
        raise MalformedPacket(f"unknown opcode {value}") from None


def _header_of(raw: bytes, expected: Opcode) -> int:
    if len(raw) < HEADER_SIZE:
        raise MalformedPacket(f"{expected.name} packet too small: {len(raw)} bytes")
    opcode, value = struct.unpack_from(HEADER_FORMAT, raw)
    if opcode != expected:
        raise MalformedPacket(f"expected {expected.name}, got opcode {opcode}")
    return value


def peek_opcode(raw: bytes) -> Opcode:
    """Read only the opcode, leaving the rest of the datagram unparsed."""
    return _opcode_of(raw)


def encode(packet: Packet) -> bytes:
    return packet.to_bytes()


def decode(raw: bytes, expect: Optional[Type[Packet]] = None) -> Packet:
    """Decode a datagram payload.

    With ``expect`` set, a datagram carrying any other packet type raises
    ``MalformedPacket`` instead of being decoded as what it actually is.
    """
    if expect is not None:
        return expect.from_bytes(raw)
    return _DECODERS[_opcode_of(raw)](raw)

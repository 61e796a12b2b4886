"""Data sources and sinks for transfers, and the access policy sessions consult.

Sessions only depend on the ``DataSource``/``DataSink``/``AccessPolicy``
protocols. ``Directory`` is the filesystem-backed implementation used by the
server; tests substitute in-memory ones.
"""
from __future__ import annotations

import errno
import logging
import os
import tempfile
from dataclasses import dataclass
from typing import BinaryIO, Protocol

from .constants import MODE_NETASCII
from .packet import ErrorCode

logger = logging.getLogger(__name__)


class StorageError(Exception):
    code = ErrorCode.UNDEFINED


class FileNotFound(StorageError):
    code = ErrorCode.FILE_NOT_FOUND


class AccessDenied(StorageError):
    code = ErrorCode.ACCESS_VIOLATION


class DiskFull(StorageError):
    code = ErrorCode.DISK_FULL


class FileExists(StorageError):
    code = ErrorCode.FILE_EXISTS


class DataSource(Protocol):
    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; fewer than ``size`` means end of data."""
        ...

    def close(self) -> None:
        ...


class DataSink(Protocol):
    def append(self, data: bytes) -> None:
        ...

    def finalize(self) -> None:
        ...

    def abort(self) -> None:
        ...


class AccessPolicy(Protocol):
    def can_read(self, name: str) -> bool:
        ...

    def can_write(self, name: str) -> bool:
        ...


class Store(Protocol):
    def open_source(self, name: str, mode: str = "octet") -> DataSource:
        ...

    def open_sink(self, name: str, mode: str = "octet") -> DataSink:
        ...


@dataclass(frozen=True, slots=True)
class Policy:
    allow_read: bool = True
    allow_write: bool = False

    def can_read(self, name: str) -> bool:
        return self.allow_read

    def can_write(self, name: str) -> bool:
        return self.allow_write


def storage_error(exc: OSError, name: str) -> StorageError:
    if exc.errno in (errno.ENOSPC, errno.EDQUOT, errno.EFBIG):
        return DiskFull(f"disk full writing {name}")
    if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS, errno.EISDIR):
        return AccessDenied(f"access denied: {name}")
    if exc.errno == errno.ENOENT:
        return FileNotFound(f"file not found: {name}")
    if exc.errno == errno.EEXIST:
        return FileExists(f"file already exists: {name}")
    return StorageError(f"{name}: {exc.strerror or exc}")


def to_netascii(data: bytes) -> bytes:
    # CR first, so the CR inserted before each LF is not expanded again
    return data.replace(b"\r", b"\r\x00").replace(b"\n", b"\r\n")


class NetasciiDecoder:
    """Undo netascii translation across block boundaries.

    A CR ending one block may pair with a LF or NUL starting the next, so it is
    held back until the following block (or ``flush``) decides what it was.
    """

    def __init__(self) -> None:
        self._pending_cr = False

    def feed(self, data: bytes) -> bytes:
        if self._pending_cr:
            data = b"\r" + data
            self._pending_cr = False
        if data.endswith(b"\r"):
            data = data[:-1]
            self._pending_cr = True
        return data.replace(b"\r\n", b"\n").replace(b"\r\x00", b"\r")

    def flush(self) -> bytes:
        if self._pending_cr:
            self._pending_cr = False
            return b"\r"
        return b""


class FileSource:
    """Reads a file in order, filling each request unless the file is exhausted."""

    def __init__(self, file: BinaryIO, netascii: bool = False, name: str = ""):
        self._file = file
        self._netascii = netascii
        self._name = name
        self._buffer = b""
        self._eof = False

    def read(self, size: int) -> bytes:
        while len(self._buffer) < size and not self._eof:
            try:
                chunk = self._file.read(size - len(self._buffer))
            except OSError as exc:
                raise storage_error(exc, self._name) from exc
            if not chunk:
                self._eof = True
                break
            self._buffer += to_netascii(chunk) if self._netascii else chunk
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def close(self) -> None:
        self._file.close()


class FileSink:
    """Writes to a temporary file next to ``path``, published there on finalize.

    Without ``overwrite`` the file is published with a hard link, so a name
    that appeared while the upload was running is never replaced.
    """

    def __init__(self, path: str, netascii: bool = False, name: str = "", overwrite: bool = False):
        self.path = path
        self.overwrite = overwrite
        self._name = name or os.path.basename(path)
        self._decoder = NetasciiDecoder() if netascii else None
        directory, base = os.path.split(path)
        try:
            fd, self._tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".part", dir=directory)
        except OSError as exc:
            raise storage_error(exc, self._name) from exc
        self._file = os.fdopen(fd, "wb")

    def append(self, data: bytes) -> None:
        if self._decoder is not None:
            data = self._decoder.feed(data)
        self._write(data)

    def _write(self, data: bytes) -> None:
        try:
            self._file.write(data)
        except OSError as exc:
            raise storage_error(exc, self._name) from exc

    def finalize(self) -> None:
        if self._decoder is not None:
            self._write(self._decoder.flush())
        try:
            self._file.close()
            if self.overwrite:
                os.replace(self._tmp_path, self.path)
            else:
                os.link(self._tmp_path, self.path)
        except OSError as exc:
            raise storage_error(exc, self._name) from exc
        finally:
            self._discard()

    def abort(self) -> None:
        try:
            self._file.close()
        except OSError as exc:
            # close re-flushes buffered bytes, which fails again on a full disk
            logger.warning("dropping partial upload %s: %s", self._name, exc)
        finally:
            self._discard()

    def _discard(self) -> None:
        try:
            os.unlink(self._tmp_path)
        except FileNotFoundError:
            pass


class Directory:
    """Serves files below ``root``; names may not escape it."""

    def __init__(self, root: str, overwrite: bool = False):
        self.root = os.path.realpath(root)
        self.overwrite = overwrite

    def resolve(self, name: str) -> str:
        relative = name.replace("\\", "/").lstrip("/")
        if not relative:
            raise AccessDenied("empty file name")
        path = os.path.realpath(os.path.join(self.root, relative))
        if not path.startswith(self.root + os.sep):
            raise AccessDenied(f"outside of served directory: {name}")
        return path

    def open_source(self, name: str, mode: str = "octet") -> FileSource:
        path = self.resolve(name)
        if os.path.isdir(path):
            raise AccessDenied(f"is a directory: {name}")
        try:
            file = open(path, "rb")
        except OSError as exc:
            raise storage_error(exc, name) from exc
        return FileSource(file, netascii=mode == MODE_NETASCII, name=name)

    def open_sink(self, name: str, mode: str = "octet") -> FileSink:
        path = self.resolve(name)
        if os.path.isdir(path):
            raise AccessDenied(f"is a directory: {name}")
        if os.path.exists(path) and not self.overwrite:
            raise FileExists(f"file already exists: {name}")
        return FileSink(path, netascii=mode == MODE_NETASCII, name=name, overwrite=self.overwrite)

from __future__ import annotations

import contextlib
import logging
import mmap
import socket
import time
from typing import Iterator, TypeVar

from . import transfer
from .constants import BUFFER_TARGET_BYTES, DEFAULT_BACKLOG, DEFAULT_SEGMENT_SIZE, DEFAULT_TIMEOUT_S
from .errors import ErrorKind, Result, TransferError, bind_error, classify, state_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

# not every platform lets user code read or set the MSS
_TCP_MAXSEG = getattr(socket, "TCP_MAXSEG", None)
_INET_FAMILIES = (socket.AF_INET, socket.AF_INET6)


def buffer_size(segment_size: int, target: int = BUFFER_TARGET_BYTES) -> int:
    """Size of the I/O buffer: the largest whole number of segments within ``target``, at least one."""
    if segment_size <= 0:
        raise ValueError(f"segment size must be positive, got {segment_size}")
    return segment_size * max(1, target // segment_size)


def _check_timeout(seconds: float) -> None:
    if seconds < 0:
        raise ValueError(f"timeout must be >= 0 seconds, got {seconds}")


def _socket_timeout(seconds: float) -> float | None:
    # 0 means block forever, which the socket module spells None
    return seconds if seconds > 0 else None


def _failed(value: T, error: TransferError, owner: object) -> Result[T]:
    logger.warning("%r: %s", owner, error)
    return Result.failure(value, error)


class Connection:
    """One TCP endpoint with a page-aligned scratch buffer.

    Build it from a host and port and call ``connect()``, or wrap an already
    connected socket with ``from_socket``/``from_fd``. Every blocking call waits
    at most ``timeout`` seconds for the socket to become ready (0 = forever)
    and reports its outcome as a ``Result``.

    Not safe for concurrent use from several threads.
    """

    def __init__(
        self,
        host: str,
        port: str | int,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        segment_size: int | None = None,
    ):
        _check_timeout(timeout)
        if segment_size is not None and segment_size <= 0:
            raise ValueError(f"segment size must be positive, got {segment_size}")
        self._host = host
        self._port = str(port)
        self._timeout = timeout
        self._segment_size = segment_size
        self._sock: socket.socket | None = None
        self._buffer: mmap.mmap | None = None
        self._view: memoryview | None = None
        self._closed = False
        self._peer_closed = False
        self._busy = 0

    @classmethod
    def from_socket(cls, sock: socket.socket, *, timeout: float = DEFAULT_TIMEOUT_S) -> "Connection":
        """Take ownership of a connected socket, e.g. one returned by ``accept``."""
        conn = cls("", "", timeout=timeout)
        sock.settimeout(_socket_timeout(timeout))
        conn._attach(sock)
        return conn

    @classmethod
    def from_fd(cls, fd: int, *, timeout: float = DEFAULT_TIMEOUT_S) -> "Connection":
        return cls.from_socket(socket.socket(fileno=fd), timeout=timeout)

    def __repr__(self) -> str:
        where = f"{self._host}:{self._port}" if self._host or self._port else f"fd={self.fileno()}"
        return f"<Connection {where} connected={self.is_connected}>"

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._sock is not None:
            self.close()

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> str:
        return self._port

    @property
    def is_connected(self) -> bool:
        return self._sock is not None and not self._peer_closed

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    @property
    def buffer(self) -> memoryview | None:
        """The internal I/O buffer, or None when not connected. Do not keep it past ``close()``."""
        return self._view

    @property
    def buffer_size(self) -> int:
        return len(self._buffer) if self._buffer is not None else 0

    # -- establishment -----------------------------------------------------

    def connect(self) -> Result[None]:
        if self._closed:
            return _failed(None, state_error("connection is closed"), self)
        if self._sock is not None:
            return _failed(None, state_error("already connected"), self)

        try:
            infos = socket.getaddrinfo(self._host, self._port, type=socket.SOCK_STREAM)
        except (OSError, UnicodeError) as exc:
            return _failed(None, classify(exc, f"resolve {self._host}:{self._port}"), self)

        # one deadline covers every candidate address
        deadline = time.monotonic() + self._timeout if self._timeout > 0 else None
        last: TransferError | None = None
        for family, type_, proto, _, addr in infos:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    last = TransferError(ErrorKind.TIMEOUT, f"connect {self._host}:{self._port}: timed out")
                    break
            sock = None
            try:
                sock = socket.socket(family, type_, proto)
                if self._segment_size is not None:
                    self._apply_segment_size(sock, self._segment_size)
                sock.settimeout(remaining)
                sock.connect(addr)
                sock.settimeout(_socket_timeout(self._timeout))
            except OSError as exc:
                if sock is not None:
                    sock.close()
                last = classify(exc, f"connect {self._host}:{self._port}")
                logger.debug("connect to %s failed: %s", addr, last)
                continue
            self._attach(sock)
            logger.debug(
                "connected to %s:%s segment_size=%d buffer=%d",
                self._host,
                self._port,
                self._segment_size,
                self.buffer_size,
            )
            return Result.success(None)

        if last is None:
            last = TransferError(ErrorKind.ADDRESS, f"no addresses for {self._host}:{self._port}")
        return _failed(None, last, self)

    def close(self) -> Result[None]:
        if self._sock is None:
            reason = "already closed" if self._closed else "not connected"
            return _failed(None, state_error(reason), self)

        sock, self._sock = self._sock, None
        self._closed = True
        self._release_buffer()
        try:
            sock.close()
        except OSError as exc:
            return _failed(None, classify(exc, "close"), self)
        logger.debug("closed %r", self)
        return Result.success(None)

    def _attach(self, sock: socket.socket) -> None:
        if self._segment_size is None:
            self._segment_size = self._read_segment_size(sock)
        size = buffer_size(self._segment_size)
        self._buffer = mmap.mmap(-1, size)
        self._view = memoryview(self._buffer)
        self._sock = sock

    def _release_buffer(self) -> None:
        view, buf = self._view, self._buffer
        self._view = self._buffer = None
        try:
            if view is not None:
                view.release()
            if buf is not None:
                buf.close()
        except BufferError:
            logger.warning("%r: I/O buffer still referenced by caller, leaving it to the garbage collector", self)

    @staticmethod
    def _read_segment_size(sock: socket.socket) -> int:
        if _TCP_MAXSEG is None or sock.family not in _INET_FAMILIES:
            return DEFAULT_SEGMENT_SIZE
        try:
            mss = sock.getsockopt(socket.IPPROTO_TCP, _TCP_MAXSEG)
        except OSError as exc:
            logger.debug("cannot read TCP_MAXSEG (%s), using %d", exc, DEFAULT_SEGMENT_SIZE)
            return DEFAULT_SEGMENT_SIZE
        return mss if mss > 0 else DEFAULT_SEGMENT_SIZE

    @staticmethod
    def _apply_segment_size(sock: socket.socket, nbytes: int) -> None:
        if _TCP_MAXSEG is None or sock.family not in _INET_FAMILIES:
            return
        sock.setsockopt(socket.IPPROTO_TCP, _TCP_MAXSEG, nbytes)

    @contextlib.contextmanager
    def _transferring(self) -> Iterator[None]:
        self._busy += 1
        try:
            yield
        finally:
            self._busy -= 1

    def _not_connected(self) -> TransferError:
        return state_error("connection is closed" if self._closed else "not connected")

    def _io_failed(self, value: T, exc: OSError, context: str) -> Result[T]:
        error = classify(exc, context)
        if error.kind is ErrorKind.PEER_CLOSED:
            self._peer_closed = True
        return _failed(value, error, self)

    def _peer_gone(self, value: T, message: str) -> Result[T]:
        self._peer_closed = True
        return _failed(value, TransferError(ErrorKind.PEER_CLOSED, message), self)

    # -- byte transfer -----------------------------------------------------

    def send_bytes(self, data, count: int | None = None) -> Result[int]:
        """Send ``count`` bytes of ``data`` (all of it by default), looping over partial writes.

        ``value`` is the number of bytes actually sent; it is short of ``count``
        only when the result carries an error.
        """
        if self._sock is None:
            return _failed(0, self._not_connected(), self)

        with memoryview(data).cast("B") as view:
            count = view.nbytes if count is None else count
            if not 0 <= count <= view.nbytes:
                raise ValueError(f"count {count} out of range for a {view.nbytes}-byte buffer")
            sent = 0
            with self._transferring():
                while sent < count:
                    try:
                        n = self._sock.send(view[sent:count])
                    except OSError as exc:
                        return self._io_failed(sent, exc, f"send after {sent} of {count} bytes")
                    if n == 0:
                        return self._peer_gone(sent, f"peer stopped accepting after {sent} of {count} bytes")
                    sent += n
        return Result.success(sent)

    def receive_bytes(self, buf, limit: int | None = None) -> Result[int]:
        """Read whatever is available, up to ``limit`` bytes, into ``buf``.

        A single read: ``value`` may be less than ``limit``, and is 0 without an
        error when the peer has closed its side cleanly.
        """
        if self._sock is None:
            return _failed(0, self._not_connected(), self)

        with memoryview(buf).cast("B") as view:
            limit = view.nbytes if limit is None else limit
            if not 0 <= limit <= view.nbytes:
                raise ValueError(f"limit {limit} out of range for a {view.nbytes}-byte buffer")
            if limit == 0:
                return Result.success(0)
            with self._transferring():
                try:
                    n = self._sock.recv_into(view, limit)
                except OSError as exc:
                    return self._io_failed(0, exc, "receive")
        if n == 0:
            logger.debug("%r: peer closed", self)
            self._peer_closed = True
        return Result.success(n)

    def receive_exact(self, buf, count: int | None = None) -> Result[int]:
        """Read exactly ``count`` bytes (``len(buf)`` by default) into ``buf``.

        ``value`` is how many bytes arrived; compare it with ``count`` (or check
        ``ok``) to know whether the read completed.
        """
        if self._sock is None:
            return _failed(0, self._not_connected(), self)

        with memoryview(buf).cast("B") as view:
            count = view.nbytes if count is None else count
            if not 0 <= count <= view.nbytes:
                raise ValueError(f"count {count} out of range for a {view.nbytes}-byte buffer")
            got = 0
            with self._transferring():
                while got < count:
                    try:
                        n = self._sock.recv_into(view[got:count])
                    except OSError as exc:
                        return self._io_failed(got, exc, f"receive after {got} of {count} bytes")
                    if n == 0:
                        return self._peer_gone(got, f"peer closed after {got} of {count} bytes")
                    got += n
        return Result.success(got)

    # -- file transfer -----------------------------------------------------

    def send_file(self, path: str, *, digest: str | None = None) -> Result[transfer.Transfer]:
        with self._transferring():
            return transfer.send_file(self, path, digest=digest)

    def receive_file(self, path: str, length: int, *, digest: str | None = None) -> Result[transfer.Transfer]:
        with self._transferring():
            return transfer.receive_file(self, path, length, digest=digest)

    # -- settings ----------------------------------------------------------

    @property
    def timeout(self) -> float:
        return self._timeout

    def set_timeout(self, seconds: float) -> Result[None]:
        _check_timeout(seconds)
        if self._closed:
            return _failed(None, state_error("connection is closed"), self)
        if self._busy:
            return _failed(None, state_error("cannot change the timeout during a transfer"), self)
        if self._sock is not None:
            try:
                self._sock.settimeout(_socket_timeout(seconds))
            except OSError as exc:
                return _failed(None, classify(exc, "set timeout"), self)
        self._timeout = seconds
        logger.debug("%r: timeout=%s", self, seconds)
        return Result.success(None)

    @property
    def segment_size(self) -> int | None:
        """Advisory max bytes per segment; None until set or negotiated at connect."""
        return self._segment_size

    def set_segment_size(self, nbytes: int) -> Result[None]:
        # the buffer keeps the size it was allocated with
        if nbytes <= 0:
            raise ValueError(f"segment size must be positive, got {nbytes}")
        if self._closed:
            return _failed(None, state_error("connection is closed"), self)
        if self._busy:
            return _failed(None, state_error("cannot change the segment size during a transfer"), self)
        if self._sock is not None:
            try:
                self._apply_segment_size(self._sock, nbytes)
            except OSError as exc:
                return _failed(None, classify(exc, "set segment size"), self)
        self._segment_size = nbytes
        logger.debug("%r: segment_size=%d", self, nbytes)
        return Result.success(None)


class Listener:
    """A listening TCP socket; ``accept()`` hands out independent Connections."""

    def __init__(
        self,
        port: str | int,
        *,
        host: str = "0.0.0.0",
        timeout: float = DEFAULT_TIMEOUT_S,
        backlog: int = DEFAULT_BACKLOG,
    ):
        _check_timeout(timeout)
        self._host = host
        self._port = str(port)
        self._timeout = timeout
        self._backlog = backlog
        self._sock: socket.socket | None = None
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "listening" if self._sock is not None else "created"
        return f"<Listener {self._host}:{self._port} {state}>"

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._sock is not None:
            self.close()

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> str:
        """The configured port; after ``listen()`` the port actually bound."""
        return self._port

    @property
    def is_listening(self) -> bool:
        return self._sock is not None

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def listen(self) -> Result[None]:
        if self._closed:
            return _failed(None, state_error("listener is closed"), self)
        if self._sock is not None:
            return _failed(None, state_error("already listening"), self)

        try:
            infos = socket.getaddrinfo(
                self._host or None,
                self._port,
                type=socket.SOCK_STREAM,
                flags=socket.AI_PASSIVE,
            )
        except (OSError, UnicodeError) as exc:
            return _failed(None, classify(exc, f"resolve {self._host}:{self._port}"), self)

        family, type_, proto, _, addr = infos[0]
        sock = None
        try:
            sock = socket.socket(family, type_, proto)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(addr)
            sock.listen(self._backlog)
            sock.settimeout(_socket_timeout(self._timeout))
        except (OSError, OverflowError) as exc:
            if sock is not None:
                sock.close()
            return _failed(None, bind_error(exc, f"listen on {self._host}:{self._port}"), self)

        self._sock = sock
        self._port = str(sock.getsockname()[1])
        logger.debug("listening on %s:%s backlog=%d", self._host, self._port, self._backlog)
        return Result.success(None)

    def accept(self, *, connection_timeout: float = DEFAULT_TIMEOUT_S) -> Result[Connection | None]:
        """Wait up to ``timeout`` seconds for a client and wrap it in a Connection.

        ``connection_timeout`` becomes the new Connection's I/O timeout.
        """
        _check_timeout(connection_timeout)
        if self._sock is None:
            reason = "listener is closed" if self._closed else "not listening"
            return _failed(None, state_error(reason), self)

        try:
            client, addr = self._sock.accept()
        except OSError as exc:
            return _failed(None, classify(exc, "accept"), self)

        try:
            conn = Connection.from_socket(client, timeout=connection_timeout)
        except OSError as exc:
            client.close()
            return _failed(None, classify(exc, "accept"), self)
        logger.debug("accepted %s on port %s", addr, self._port)
        return Result.success(conn)

    def close(self) -> Result[None]:
        if self._sock is None:
            reason = "already closed" if self._closed else "not listening"
            return _failed(None, state_error(reason), self)

        sock, self._sock = self._sock, None
        self._closed = True
        try:
            sock.close()
        except OSError as exc:
            return _failed(None, classify(exc, "close"), self)
        logger.debug("closed listener on port %s", self._port)
        return Result.success(None)

    @property
    def timeout(self) -> float:
        return self._timeout

    def set_timeout(self, seconds: float) -> Result[None]:
        _check_timeout(seconds)
        if self._closed:
            return _failed(None, state_error("listener is closed"), self)
        if self._sock is not None:
            try:
                self._sock.settimeout(_socket_timeout(seconds))
            except OSError as exc:
                return _failed(None, classify(exc, "set timeout"), self)
        self._timeout = seconds
        return Result.success(None)

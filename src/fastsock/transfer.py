"""Chunked file transfer over a Connection.

Both directions stream through the connection's own I/O buffer, one buffer's
worth at a time, so disk reads and writes line up with the segment size the
buffer was sized for. The expected length of a received file is agreed
out-of-band; nothing here frames the stream.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .digest import new_digest
from .errors import ErrorKind, Result, TransferError, classify, state_error

if TYPE_CHECKING:
    from .net import Connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Transfer:
    count: int
    digest: bytes | None = None
    duration_s: float = 0.0

    @property
    def hexdigest(self) -> str | None:
        return self.digest.hex() if self.digest is not None else None

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.count * 8 / 1_000_000) / self.duration_s


def _mib_per_s(count: int, seconds: float) -> float:
    return count / seconds / (1024 * 1024) if seconds > 0 else 0.0


def send_file(conn: "Connection", path: str, *, digest: str | None = None) -> Result[Transfer]:
    """Send the whole file at ``path``; ``count`` below the file size means it failed part way."""
    h = new_digest(digest) if digest is not None else None
    buf = conn.buffer
    if buf is None:
        return Result.failure(Transfer(0), state_error("connection is not connected"))

    start = time.monotonic()
    sent = 0
    error: TransferError | None = None
    try:
        with open(path, "rb") as f:
            while True:
                n = f.readinto(buf)
                if not n:
                    break
                r = conn.send_bytes(buf, n)
                if h is not None:
                    h.update(buf[: r.value])
                sent += r.value
                if not r.ok:
                    error = r.error
                    break
    except OSError as exc:
        error = classify(exc, f"read {path}")

    elapsed = time.monotonic() - start
    if error is not None:
        logger.warning("send %s stopped after %d bytes: %s", path, sent, error)
        return Result.failure(Transfer(sent, None, elapsed), error)

    logger.info("sent %s; bytes=%d throughput=%.2f MiB/s", path, sent, _mib_per_s(sent, elapsed))
    return Result.success(Transfer(sent, h.digest() if h is not None else None, elapsed))


def receive_file(conn: "Connection", path: str, length: int, *, digest: str | None = None) -> Result[Transfer]:
    """Receive ``length`` bytes into ``path``, creating or truncating it.

    On a short transfer the partial file is left on disk and no digest is
    reported; the caller decides what to do with it.
    """
    if length < 0:
        raise ValueError(f"length must be >= 0, got {length}")
    h = new_digest(digest) if digest is not None else None
    buf = conn.buffer
    if buf is None:
        return Result.failure(Transfer(0), state_error("connection is not connected"))

    start = time.monotonic()
    received = 0
    error: TransferError | None = None
    try:
        with open(path, "wb") as out:
            while received < length:
                r = conn.receive_bytes(buf, min(len(buf), length - received))
                if not r.ok:
                    error = r.error
                    break
                n = r.value
                if n == 0:
                    error = TransferError(
                        ErrorKind.PEER_CLOSED,
                        f"peer closed after {received} of {length} bytes",
                    )
                    break
                out.write(buf[:n])
                if h is not None:
                    h.update(buf[:n])
                received += n
    except OSError as exc:
        error = classify(exc, f"write {path}")

    elapsed = time.monotonic() - start
    if error is not None:
        logger.warning("receive %s stopped after %d of %d bytes: %s", path, received, length, error)
        return Result.failure(Transfer(received, None, elapsed), error)

    logger.info("received %s; bytes=%d throughput=%.2f MiB/s", path, received, _mib_per_s(received, elapsed))
    return Result.success(Transfer(received, h.digest() if h is not None else None, elapsed))

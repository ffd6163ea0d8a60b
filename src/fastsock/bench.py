from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass

from .constants import SHA1
from .digest import file_digest
from .errors import Result
from .net import Connection, Listener
from .transfer import Transfer

DEFAULT_BENCH_TIMEOUT_S = 10
_FILL_CHUNK = 1024 * 1024


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    digest_match: bool


def _write_random(path: str, size_bytes: int) -> None:
    with open(path, "wb") as f:
        remaining = size_bytes
        while remaining > 0:
            n = min(_FILL_CHUNK, remaining)
            f.write(os.urandom(n))
            remaining -= n


def run_benchmark(
    *,
    size_bytes: int,
    digest: str = SHA1,
    segment_size: int | None = None,
    timeout: float = DEFAULT_BENCH_TIMEOUT_S,
) -> BenchmarkResult:
    """Push a random file through a loopback Listener/Connection pair and verify it."""
    listener = Listener(0, host="127.0.0.1", timeout=timeout)
    src_fd, src_path = tempfile.mkstemp(prefix="fastsock-src-")
    dst_fd, dst_path = tempfile.mkstemp(prefix="fastsock-dst-")
    os.close(src_fd)
    os.close(dst_fd)

    recv_holder: dict[str, Result[Transfer]] = {}

    def recv_runner() -> None:
        try:
            accepted = listener.accept(connection_timeout=timeout)
            if not accepted.ok or accepted.value is None:
                recv_holder["r"] = Result.failure(Transfer(0), accepted.error)
                return
            with accepted.value as server:
                recv_holder["r"] = server.receive_file(dst_path, size_bytes, digest=digest)
        finally:
            listener.close()

    try:
        listener.listen().unwrap()
        _write_random(src_path, size_bytes)

        t = threading.Thread(target=recv_runner, daemon=True)
        t.start()

        with Connection("127.0.0.1", listener.port, timeout=timeout, segment_size=segment_size) as client:
            client.connect().unwrap()
            sent = client.send_file(src_path, digest=digest).unwrap()

        t.join(timeout + 10.0 if timeout > 0 else None)
        received = recv_holder["r"].unwrap()

        assert received.count == size_bytes
        digest_match = sent.digest == received.digest == file_digest(dst_path, digest)
    finally:
        # only still open when the receiver thread never ran
        if listener.is_listening:
            listener.close()
        os.unlink(src_path)
        os.unlink(dst_path)

    duration_s = max(0.001, received.duration_s)
    return BenchmarkResult(
        bytes_transferred=received.count,
        duration_s=duration_s,
        throughput_mbps=(received.count * 8 / 1_000_000) / duration_s,
        digest_match=digest_match,
    )

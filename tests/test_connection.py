from __future__ import annotations

import os
import socket
import time

import pytest

from fastsock.constants import BUFFER_TARGET_BYTES, DEFAULT_SEGMENT_SIZE
from fastsock.errors import ErrorKind
from fastsock.net import Connection, Listener, buffer_size


def test_buffer_size_is_whole_segments():
    assert buffer_size(1448) % 1448 == 0
    assert buffer_size(1448) <= BUFFER_TARGET_BYTES
    # a segment bigger than the target still gets one whole segment
    assert buffer_size(BUFFER_TARGET_BYTES * 2) == BUFFER_TARGET_BYTES * 2
    with pytest.raises(ValueError):
        buffer_size(0)


def test_send_three_bytes(pair):
    client, server = pair
    assert client.send_bytes(bytes([0x01, 0x02, 0x03]), 3).value == 3

    buf = bytearray(3)
    r = server.receive_exact(buf, 3)
    assert r.ok and r.value == 3
    assert buf == bytes([0x01, 0x02, 0x03])


def test_fragmented_writes_reassemble(pair, background):
    client, server = pair
    payload = os.urandom(3 * 1024 * 1024 + 17)

    def send_in_pieces():
        sent = 0
        for size in (1, 7, 1500, 65536, 999_999):
            r = client.send_bytes(payload[sent : sent + size])
            assert r.ok
            sent += r.value
        return client.send_bytes(payload[sent:]).value + sent

    wait = background(send_in_pieces)
    buf = bytearray(len(payload))
    r = server.receive_exact(buf)
    assert r.value == len(payload)
    assert bytes(buf) == payload
    assert wait() == len(payload)


def test_send_count_limits_bytes(pair):
    client, server = pair
    r = client.send_bytes(b"abcdef", 3)
    assert r.ok and r.value == 3

    buf = bytearray(3)
    assert server.receive_exact(buf).ok
    assert buf == b"abc"

    with pytest.raises(ValueError):
        client.send_bytes(b"ab", 3)


def test_receive_bytes_is_a_single_read(pair):
    client, server = pair
    client.send_bytes(b"hello")
    buf = bytearray(64)
    r = server.receive_bytes(buf, 64)
    assert r.ok
    assert 1 <= r.value <= 5
    assert buf[: r.value] == b"hello"[: r.value]


def test_receive_bytes_reports_clean_close_as_zero(pair):
    client, server = pair
    client.close()
    r = server.receive_bytes(bytearray(16))
    assert r.ok
    assert r.value == 0
    assert not server.is_connected


def test_receive_exact_peer_closed_keeps_partial_count(pair):
    client, server = pair
    client.send_bytes(b"ab")
    client.close()

    buf = bytearray(5)
    r = server.receive_exact(buf)
    assert not r.ok
    assert r.kind is ErrorKind.PEER_CLOSED
    assert r.value == 2
    assert buf[:2] == b"ab"


def test_receive_times_out(pair):
    _, server = pair
    assert server.set_timeout(0.3).ok

    start = time.monotonic()
    r = server.receive_exact(bytearray(4))
    elapsed = time.monotonic() - start

    assert r.kind is ErrorKind.TIMEOUT
    assert r.value == 0
    assert 0.25 <= elapsed < 5
    # a timeout is not a disconnect
    assert server.is_connected


def test_send_to_closed_peer_eventually_fails(pair):
    client, server = pair
    server.close()
    chunk = b"x" * 65536

    failure = None
    for _ in range(200):
        r = client.send_bytes(chunk)
        assert r.value <= len(chunk)
        if not r.ok:
            failure = r
            break
        time.sleep(0.01)

    assert failure is not None
    assert failure.kind is ErrorKind.PEER_CLOSED


def test_close_twice(pair):
    client, _ = pair
    assert client.close().ok
    assert client.fileno() == -1
    assert client.buffer is None

    second = client.close()
    assert second.kind is ErrorKind.STATE


def test_operations_after_close_fail(pair):
    client, _ = pair
    client.close()
    assert client.send_bytes(b"x").kind is ErrorKind.STATE
    assert client.receive_bytes(bytearray(1)).kind is ErrorKind.STATE
    assert client.receive_exact(bytearray(1)).kind is ErrorKind.STATE
    assert client.connect().kind is ErrorKind.STATE
    assert client.set_timeout(1).kind is ErrorKind.STATE


def test_close_without_connect_is_a_harmless_failure(listener):
    conn = Connection("127.0.0.1", listener.port)
    assert conn.close().kind is ErrorKind.STATE
    assert not conn.is_connected
    # still usable afterwards
    assert conn.connect().ok
    assert conn.close().ok


def test_connect_twice(pair):
    client, _ = pair
    assert client.connect().kind is ErrorKind.STATE
    assert client.is_connected


def test_connect_refused():
    probe = Listener(0, host="127.0.0.1")
    probe.listen().unwrap()
    port = probe.port
    probe.close()

    conn = Connection("127.0.0.1", port, timeout=5)
    r = conn.connect()
    assert r.kind is ErrorKind.IO
    assert not conn.is_connected


def test_connect_unresolvable_host():
    r = Connection("no-such-host.invalid", 80, timeout=5).connect()
    assert r.kind is ErrorKind.ADDRESS


def test_host_and_port_strings(listener):
    conn = Connection("127.0.0.1", int(listener.port))
    assert conn.host == "127.0.0.1"
    assert conn.port == listener.port


def test_accepted_connection_has_no_address(pair):
    _, server = pair
    assert server.host == ""
    assert server.port == ""
    assert server.is_connected


def test_invalid_settings_rejected(pair):
    client, _ = pair
    with pytest.raises(ValueError):
        client.set_timeout(-1)
    with pytest.raises(ValueError):
        client.set_segment_size(0)
    with pytest.raises(ValueError):
        Connection("127.0.0.1", 1, timeout=-0.5)


def test_timeout_round_trip(pair):
    client, _ = pair
    assert client.timeout == 10
    assert client.set_timeout(0).ok
    assert client.timeout == 0


def test_segment_size_override_sizes_buffer(listener):
    with Connection("127.0.0.1", listener.port, segment_size=1000) as conn:
        assert conn.connect().ok
        assert conn.segment_size == 1000
        assert conn.buffer_size % 1000 == 0


def test_segment_size_change_keeps_buffer(pair):
    client, _ = pair
    negotiated = client.segment_size
    assert negotiated is not None and negotiated > 0
    size = client.buffer_size
    assert size % negotiated == 0

    assert client.set_segment_size(536).ok
    assert client.segment_size == 536
    assert client.buffer_size == size


def test_settings_locked_during_transfer(pair, background):
    client, server = pair
    buf = bytearray(4)
    wait = background(server.receive_exact, buf)
    # give the receive time to block
    time.sleep(0.2)

    assert server.set_timeout(1).kind is ErrorKind.STATE
    assert server.set_segment_size(1000).kind is ErrorKind.STATE
    assert server.timeout == 10

    client.send_bytes(b"done")
    assert wait().ok
    assert buf == b"done"
    assert server.set_timeout(1).ok


def test_buffer_zero_copy_send(pair):
    client, server = pair
    buf = client.buffer
    assert len(buf) == client.buffer_size
    buf[:4] = b"ping"
    assert client.send_bytes(buf, 4).value == 4

    got = bytearray(4)
    assert server.receive_exact(got).ok
    assert got == b"ping"


def test_from_socket_pair():
    a, b = socket.socketpair()
    left = Connection.from_socket(a, timeout=5)
    right = Connection.from_fd(b.detach(), timeout=5)
    with left, right:
        assert left.is_connected and right.is_connected
        assert left.segment_size == DEFAULT_SEGMENT_SIZE
        assert left.send_bytes(b"over a pair").ok
        buf = bytearray(11)
        assert right.receive_exact(buf).ok
        assert buf == b"over a pair"


def test_send_times_out(pair):
    client, server = pair
    data = os.urandom(1024 * 1024) * 64
    assert client.set_timeout(0.3).ok

    # nobody reads on the server side, so the socket buffers fill up
    r = client.send_bytes(data)
    assert r.kind is ErrorKind.TIMEOUT
    assert 0 < r.value < len(data)
    assert client.is_connected

    got = bytearray(r.value)
    assert server.receive_exact(got).ok
    assert bytes(got) == data[: r.value]


class _StalledSocket:
    """Stands in for a socket whose connect never completes."""

    def __init__(self, *args, **kwargs):
        self.timeout = None

    def settimeout(self, value):
        self.timeout = value

    def connect(self, addr):
        time.sleep(self.timeout)
        raise TimeoutError("timed out")

    def close(self):
        pass


def test_connect_timeout_spans_all_addresses(monkeypatch):
    addrs = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (f"192.0.2.{i}", 80)) for i in range(1, 4)]
    monkeypatch.setattr(socket, "getaddrinfo", lambda *args, **kwargs: addrs)
    monkeypatch.setattr(socket, "socket", _StalledSocket)

    conn = Connection("multi.example", 80, timeout=0.3)
    start = time.monotonic()
    r = conn.connect()
    elapsed = time.monotonic() - start

    assert r.kind is ErrorKind.TIMEOUT
    assert elapsed < 0.6
    assert not conn.is_connected


def test_rejected_segment_size_is_reported(pair):
    client, _ = pair
    before = client.segment_size
    # below the smallest MSS the kernel accepts
    r = client.set_segment_size(10)
    assert r.kind is ErrorKind.IO
    assert client.segment_size == before

from __future__ import annotations

import threading

import pytest

from fastsock.net import Connection, Listener

IO_TIMEOUT = 10


@pytest.fixture
def listener():
    lst = Listener(0, host="127.0.0.1", timeout=IO_TIMEOUT)
    lst.listen().unwrap()
    with lst:
        yield lst


@pytest.fixture
def pair(listener):
    """A connected (client, server) pair over loopback."""
    client = Connection("127.0.0.1", listener.port, timeout=IO_TIMEOUT)
    client.connect().unwrap()
    server = listener.accept(connection_timeout=IO_TIMEOUT).unwrap()
    with client, server:
        yield client, server


@pytest.fixture
def background():
    """Run a blocking call on a helper thread; returns a function that joins and yields its return value."""

    def start(fn, *args, **kwargs):
        holder = {}

        def runner():
            holder["result"] = fn(*args, **kwargs)

        t = threading.Thread(target=runner, daemon=True)
        t.start()

        def wait(timeout: float = 60.0):
            t.join(timeout)
            assert not t.is_alive(), "background call did not finish"
            return holder["result"]

        return wait

    return start

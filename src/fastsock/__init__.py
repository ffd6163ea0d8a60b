"""fastsock: buffered, timeout-aware TCP connections with file transfer.

- ``Connection``: one TCP endpoint with a page-aligned I/O buffer
- ``Listener``: accepts clients and hands out Connections
- every blocking call returns a ``Result`` instead of raising

Synchronous on purpose: one connection per object, one thread per connection.
"""

from .errors import ErrorKind, Result, TransferError
from .net import Connection, Listener
from .transfer import Transfer

__all__ = ["Connection", "ErrorKind", "Listener", "Result", "Transfer", "TransferError"]

"""Error taxonomy and the per-operation result type.

Every blocking or state-changing call on a Connection or Listener returns a
``Result``. Low-level ``OSError``s are translated into a ``TransferError`` with
one of the ``ErrorKind`` values; nothing is raised at the caller unless they
ask for it with ``Result.unwrap()``.
"""
from __future__ import annotations

import enum
import errno
import socket
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(enum.IntEnum):
    ADDRESS = 1
    TIMEOUT = 2
    PEER_CLOSED = 3
    IO = 4
    STATE = 5


class TransferError(Exception):
    def __init__(self, kind: ErrorKind, message: str, errno: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.errno = errno

    def __repr__(self) -> str:
        return f"TransferError({self.kind.name}, {self.message!r})"

    def __str__(self) -> str:
        return f"{self.kind.name.lower()}: {self.message}"


_PEER_CLOSED = (ConnectionResetError, BrokenPipeError, ConnectionAbortedError)
_ADDRESS_ERRNOS = frozenset({errno.EADDRINUSE, errno.EADDRNOTAVAIL, errno.EACCES})


def classify(exc: BaseException, context: str = "") -> TransferError:
    """Translate a socket or file exception into a ``TransferError``."""
    prefix = f"{context}: " if context else ""
    if isinstance(exc, TransferError):
        return exc
    if isinstance(exc, socket.gaierror):
        return TransferError(ErrorKind.ADDRESS, f"{prefix}{exc.strerror or exc}", exc.errno)
    if isinstance(exc, (OverflowError, UnicodeError)):
        return TransferError(ErrorKind.ADDRESS, f"{prefix}{exc}")
    if isinstance(exc, TimeoutError):
        return TransferError(ErrorKind.TIMEOUT, f"{prefix}timed out", errno.ETIMEDOUT)
    if isinstance(exc, _PEER_CLOSED):
        return TransferError(ErrorKind.PEER_CLOSED, f"{prefix}{exc.strerror or exc}", exc.errno)
    if isinstance(exc, OSError):
        detail = exc.strerror or str(exc)
        if exc.filename is not None:
            detail = f"{detail}: {exc.filename}"
        return TransferError(ErrorKind.IO, f"{prefix}{detail}", exc.errno)
    return TransferError(ErrorKind.IO, f"{prefix}{exc}")


def bind_error(exc: BaseException, context: str = "") -> TransferError:
    # bind/listen failures caused by the port itself are address errors
    if getattr(exc, "errno", None) in _ADDRESS_ERRNOS:
        prefix = f"{context}: " if context else ""
        return TransferError(ErrorKind.ADDRESS, f"{prefix}{exc.strerror or exc}", exc.errno)
    return classify(exc, context)


@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    value: T
    error: TransferError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(value)

    @staticmethod
    def failure(value: T, error: TransferError) -> "Result[T]":
        return Result(value, error)


def state_error(message: str) -> TransferError:
    return TransferError(ErrorKind.STATE, message)

"""
Listeners and connections for Socksgate.

A listener hands out accepted client connections one at a time. Connections
carry an optional absolute deadline on the event loop clock: once it passes,
every read and write on the connection fails with DeadlineExceeded, no matter
how active the connection has been.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ListenerClosed(Exception):
    """The listener was closed; no more connections will be accepted."""


class ConnectionClosedError(ConnectionError):
    """The connection was closed before the operation could run."""


class DeadlineExceeded(TimeoutError):
    """The connection outlived its deadline."""


class Connection:
    """An accepted client connection with an optional deadline."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._deadline: Optional[float] = None

    @property
    def deadline(self) -> Optional[float]:
        """Absolute deadline in ``loop.time()`` units, or None."""
        return self._deadline

    @property
    def remote_addr(self) -> Any:
        return self.writer.get_extra_info("peername")

    @property
    def local_addr(self) -> Any:
        return self.writer.get_extra_info("sockname")

    def set_deadline(self, deadline: Optional[float]) -> None:
        """Set the absolute deadline for all future reads and writes.

        Operations already waiting when the deadline is set are not affected.
        Raises ConnectionClosedError if the connection is already closing.
        """
        if self.writer.is_closing():
            raise ConnectionClosedError(
                f"cannot set deadline on closed connection {self.remote_addr}"
            )
        self._deadline = deadline

    def time_remaining(self) -> Optional[float]:
        """Seconds left before the deadline, None if there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def _check_deadline(self) -> None:
        if self.time_remaining() == 0.0:
            raise DeadlineExceeded(f"deadline exceeded for {self.remote_addr}")

    async def guard(self, aw):
        """Await ``aw``, failing with DeadlineExceeded once the deadline passes."""
        remaining = self.time_remaining()
        if remaining is None:
            return await aw
        if remaining == 0.0:
            aw.close()
            raise DeadlineExceeded(f"deadline exceeded for {self.remote_addr}")
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise DeadlineExceeded(f"deadline exceeded for {self.remote_addr}") from e

    async def read(self, n: int = -1) -> bytes:
        return await self.guard(self.reader.read(n))

    async def readexactly(self, n: int) -> bytes:
        return await self.guard(self.reader.readexactly(n))

    async def write(self, data: bytes) -> None:
        self._check_deadline()
        self.writer.write(data)
        await self.guard(self.writer.drain())

    def abort(self) -> None:
        self.writer.transport.abort()

    async def close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("error while closing %s: %s", self.remote_addr, e)


class Listener(ABC):
    """Base class for listeners."""

    @abstractmethod
    async def accept(self) -> Connection:
        """Wait for and return the next connection.

        Raises ListenerClosed once the listener has been closed.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop accepting connections."""
        pass

    @property
    @abstractmethod
    def addr(self) -> Any:
        """The address the listener is bound to."""
        pass


class TCPListener(Listener):
    """A TCP listener built on ``asyncio.start_server``."""

    def __init__(self):
        self._server: Optional[asyncio.AbstractServer] = None
        self._queue: "asyncio.Queue[Optional[Connection]]" = asyncio.Queue()
        self._addr: Any = None
        self._closed = False

    @classmethod
    async def bind(cls, host: Optional[str], port: int) -> "TCPListener":
        """Bind a listening socket. ``host=None`` binds every interface."""
        listener = cls()
        listener._server = await asyncio.start_server(
            listener._on_connect, host, port
        )
        listener._addr = listener._server.sockets[0].getsockname()
        return listener

    def _on_connect(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._closed:
            writer.close()
            return
        self._queue.put_nowait(Connection(reader, writer))

    async def accept(self) -> Connection:
        if self._closed:
            raise ListenerClosed(f"listener on {self._addr} is closed")
        conn = await self._queue.get()
        if conn is None:
            # wake the next waiter too
            self._queue.put_nowait(None)
            raise ListenerClosed(f"listener on {self._addr} is closed")
        return conn

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._server is not None:
            self._server.close()
        while not self._queue.empty():
            conn = self._queue.get_nowait()
            if conn is not None:
                conn.writer.close()
        self._queue.put_nowait(None)

    @property
    def addr(self) -> Any:
        return self._addr


class TimedListener(Listener):
    """Caps the total lifetime of every accepted connection.

    Each connection gets a deadline of accept time plus ``timeout`` seconds.
    The deadline is set once and never renewed by activity.
    """

    def __init__(self, listener: Listener, timeout: float):
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.listener = listener
        self.timeout = timeout

    async def accept(self) -> Connection:
        conn = await self.listener.accept()
        deadline = asyncio.get_running_loop().time() + self.timeout
        try:
            conn.set_deadline(deadline)
        except ConnectionClosedError:
            conn.abort()
            raise
        return conn

    def close(self) -> None:
        self.listener.close()

    @property
    def addr(self) -> Any:
        return self.listener.addr

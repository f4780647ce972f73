"""Out-of-band event channel between a spawned engine and this process"""
import asyncio
import os
import random
import sys
from typing import AsyncIterator, List, Optional, Protocol, Tuple
import logging

from core.errors import TransportError

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


class AuxiliaryChannel(Protocol):
    """Carries the engine's event stream separately from stdout/stderr"""

    async def open(self) -> None:
        ...

    def destination(self) -> str:
        """Value for the engine's --events-stream-to flag"""
        ...

    def pass_fds(self) -> Tuple[int, ...]:
        ...

    def after_spawn(self) -> None:
        """Release this process's copy of anything handed to the child"""
        ...

    def read(self) -> AsyncIterator[bytes]:
        ...

    def close(self) -> None:
        ...


class FdPipeChannel:
    """Extra inherited pipe; the engine writes to fd://<n>"""

    def __init__(self):
        self._read_fd: Optional[int] = None
        self._write_fd: Optional[int] = None
        self._transport: Optional[asyncio.ReadTransport] = None

    async def open(self) -> None:
        self._read_fd, self._write_fd = os.pipe()

    def destination(self) -> str:
        return f"fd://{self._write_fd}"

    def pass_fds(self) -> Tuple[int, ...]:
        return (self._write_fd,)

    def after_spawn(self) -> None:
        if self._write_fd is not None:
            os.close(self._write_fd)
            self._write_fd = None

    async def read(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        pipe = os.fdopen(self._read_fd, "rb", 0)
        self._read_fd = None
        self._transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)

        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                break
            yield data

    def close(self) -> None:
        self.after_spawn()
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self._read_fd is not None:
            os.close(self._read_fd)
            self._read_fd = None


class _PipeProtocol(asyncio.Protocol):
    def __init__(self, queue: "asyncio.Queue[Optional[bytes]]"):
        self.queue = queue

    def connection_made(self, transport):
        logger.debug("Engine connected to event pipe")

    def data_received(self, data: bytes):
        self.queue.put_nowait(data)

    def connection_lost(self, exc):
        self.queue.put_nowait(None)


class NamedPipeChannel:
    """Windows named pipe served by this process; the engine connects to it"""

    def __init__(self):
        self.path = r"\\.\pipe\gptscript-" + str(random.randint(0, 999999))
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self._servers: List[object] = []

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        start_serving_pipe = getattr(loop, "start_serving_pipe", None)
        if start_serving_pipe is None:
            raise TransportError("Named pipe event channel requires the proactor event loop")
        self._servers = await start_serving_pipe(lambda: _PipeProtocol(self._queue), self.path)
        logger.debug(f"Serving event pipe at {self.path}")

    def destination(self) -> str:
        return self.path

    def pass_fds(self) -> Tuple[int, ...]:
        return ()

    def after_spawn(self) -> None:
        pass

    async def read(self) -> AsyncIterator[bytes]:
        while True:
            data = await self._queue.get()
            if data is None:
                break
            yield data

    def close(self) -> None:
        for server in self._servers:
            server.close()
        self._servers = []
        self._queue.put_nowait(None)


def select_channel() -> AuxiliaryChannel:
    """Pick the channel the current platform can hand to a child process"""
    if sys.platform != "win32" and hasattr(os, "pipe"):
        return FdPipeChannel()
    return NamedPipeChannel()

"""Live log and shell sessions.

Both work against a client *channel*: an async ``send(bytes)`` and an async
``receive() -> bytes``. Either raises ``ChannelClosed`` once the client is
gone. Blocking reads on docker streams run in worker threads under a limiter
owned by the session, so idle sessions never hold tokens of the shared
threadpool that sync API routes run on.
"""
from __future__ import annotations

import asyncio
import struct
from typing import Any, Awaitable, Callable

import anyio
import anyio.to_thread
from docker.errors import DockerException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from .docker_ops import DockerRuntime, ExecSession
from .models import RuntimeContainer
from .naming import stack_labels
from .settings import settings

HEADER_SIZE = 8

# Anything that can come out of reading a docker stream that has gone away.
STREAM_ERRORS = (OSError, ValueError, Urllib3HTTPError, DockerException)

Send = Callable[[bytes], Awaitable[None]]
Receive = Callable[[], Awaitable[bytes]]


class ChannelClosed(Exception):
    pass


def select_container(containers: list[RuntimeContainer], container_id: str | None) -> RuntimeContainer | None:
    """Exact id or id-prefix match; the first container when no id is given or nothing matches."""
    if not containers:
        return None
    if container_id:
        for c in containers:
            if c.id == container_id or c.id.startswith(container_id):
                return c
    return containers[0]


def session_target(runtime: DockerRuntime, stack: str, container_id: str | None) -> RuntimeContainer | None:
    return select_container(runtime.list_containers(stack_labels(stack)), container_id)


def read_exactly(stream: Any, n: int) -> bytes | None:
    """Read ``n`` bytes, or None if the stream ends first."""
    buf = b""
    while len(buf) < n:
        chunk = stream.read(n - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def parse_header(header: bytes) -> tuple[int, int]:
    """Return (stream type, payload length) of a multiplexed frame header."""
    stream_type = header[0]
    (length,) = struct.unpack(">I", header[4:8])
    return stream_type, length


async def pump_logs(stream: Any, send: Send, limiter: anyio.CapacityLimiter | None = None) -> int:
    """Forward each stdout/stderr frame of ``stream`` as one message.

    Ends quietly on EOF, a short read, a read error or a closed channel.
    Returns the number of frames forwarded.
    """
    limiter = limiter or anyio.CapacityLimiter(1)
    frames = 0
    while True:
        try:
            header = await anyio.to_thread.run_sync(read_exactly, stream, HEADER_SIZE, limiter=limiter)
            if header is None:
                break
            _, length = parse_header(header)
            payload = await anyio.to_thread.run_sync(read_exactly, stream, length, limiter=limiter) if length else b""
        except STREAM_ERRORS:
            break
        if payload is None:
            break
        try:
            await send(payload)
        except ChannelClosed:
            break
        frames += 1
    return frames


async def _close_when_gone(receive: Receive, stream: Any) -> None:
    try:
        while True:
            await receive()  # input on a log session is ignored
    except ChannelClosed:
        stream.close()


async def stream_logs(
    runtime: DockerRuntime,
    container: RuntimeContainer,
    send: Send,
    tail: int | None = None,
    receive: Receive | None = None,
) -> int:
    """Follow a container's logs until EOF or until the client leaves.

    With ``receive`` given, a client that disconnects while the container is
    quiet closes the docker stream at once instead of on the next log line.
    """
    limiter = anyio.CapacityLimiter(1)
    stream = await anyio.to_thread.run_sync(runtime.follow_logs, container.id, tail, limiter=limiter)
    watcher = asyncio.create_task(_close_when_gone(receive, stream)) if receive else None
    try:
        return await pump_logs(stream, send, limiter)
    finally:
        if watcher is not None:
            watcher.cancel()
        stream.close()


async def proxy_exec(session: ExecSession, receive: Receive, send: Send, read_size: int | None = None) -> None:
    """Relay client input to the exec and exec output to the client.

    The session is over when exec output ends. The inbound relay is then
    cancelled and the exec stream closed; if the client leaves first, closing
    the exec stream ends the outbound side too.
    """
    read_size = read_size or settings.exec_read_size
    # one token for the blocked read, one for a concurrent write
    limiter = anyio.CapacityLimiter(2)

    async def inbound() -> None:
        try:
            while True:
                data = await receive()
                await anyio.to_thread.run_sync(session.write, data, limiter=limiter)
        except (ChannelClosed, OSError):
            session.close()

    inbound_task = asyncio.create_task(inbound())
    try:
        while True:
            try:
                chunk = await anyio.to_thread.run_sync(session.read, read_size, limiter=limiter)
            except STREAM_ERRORS:
                break
            if not chunk:
                break
            try:
                await send(chunk)
            except ChannelClosed:
                break
    finally:
        inbound_task.cancel()
        session.close()


async def open_shell(runtime: DockerRuntime, container: RuntimeContainer, receive: Receive, send: Send) -> None:
    session = await anyio.to_thread.run_sync(runtime.exec_shell, container.id, limiter=anyio.CapacityLimiter(1))
    await proxy_exec(session, receive, send)

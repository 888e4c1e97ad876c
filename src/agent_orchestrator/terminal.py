"""Terminal relay - interactive shell sessions inside running containers.

The wire protocol between a remote client and a session is a bidirectional
byte channel. Binary frames are stdin. A text frame that is exactly a resize
control message resizes the TTY; any other text, including malformed JSON,
is passed through to stdin verbatim.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
import inspect
import json
from typing import Protocol

import structlog

from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.errors import NotFoundError, ResourceError
from agent_orchestrator.models import ContainerStatus, utcnow
from agent_orchestrator.runtime.base import ContainerRuntime, TerminalStream

logger = structlog.get_logger()

SHELL_COMMAND = ["/bin/sh"]

DataHandler = Callable[[bytes], Awaitable[None] | None]
EndHandler = Callable[[], Awaitable[None] | None]


@dataclass
class ResizeFrame:
    cols: int
    rows: int


@dataclass
class TerminalSession:
    """One attached TTY exec."""

    container_id: str
    exec_id: str
    stream: TerminalStream
    created_at: datetime = field(default_factory=utcnow)
    dimensions: tuple[int, int] | None = None
    ended: bool = False
    detached: bool = False
    data_handlers: list[DataHandler] = field(default_factory=list)
    end_handlers: list[EndHandler] = field(default_factory=list)
    reader: asyncio.Task | None = None


def _positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def parse_control_frame(text: str) -> ResizeFrame | None:
    """Return a ResizeFrame if `text` is exactly a resize message."""
    try:
        message = json.loads(text)
    except ValueError:
        return None

    if not isinstance(message, dict) or set(message) != {"type", "cols", "rows"}:
        return None
    if message["type"] != "resize":
        return None
    if not (_positive_int(message["cols"]) and _positive_int(message["rows"])):
        return None
    return ResizeFrame(cols=message["cols"], rows=message["rows"])


async def _call(handler: Callable, *args) -> None:
    try:
        result = handler(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("terminal_handler_failed", error=str(e))


class TerminalRelay:
    """Attaches shells to running containers and relays their I/O."""

    def __init__(self, runtime: ContainerRuntime, containers: ContainerManager):
        self.runtime = runtime
        self.containers = containers

    async def attach_terminal(self, container_id: str) -> TerminalSession:
        """Start `/bin/sh` under a TTY with stdin attached.

        Raises:
            NotFoundError: container is unknown or not running.
            ResourceError: the runtime could not open the exec.
        """
        container = self.containers.get_container_status(container_id)
        if container is None or container.status != ContainerStatus.RUNNING:
            raise NotFoundError("Container", container_id, "no running container to attach to")

        try:
            stream = await self.runtime.open_terminal(container.runtime_id, SHELL_COMMAND)
        except Exception as e:
            logger.error("terminal_attach_failed", container_id=container_id, error=str(e))
            raise ResourceError("container", container_id, "attach terminal to", str(e)) from e

        session = TerminalSession(container_id=container_id, exec_id=stream.exec_id, stream=stream)
        logger.info("terminal_attached", container_id=container_id, exec_id=session.exec_id)
        return session

    async def _read_loop(self, session: TerminalSession) -> None:
        try:
            while True:
                data = await session.stream.read()
                if not data:
                    break
                for handler in list(session.data_handlers):
                    await _call(handler, data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not session.detached:
                logger.warning("terminal_read_failed", exec_id=session.exec_id, error=str(e))

        session.ended = True
        logger.debug("terminal_stream_ended", exec_id=session.exec_id)
        for handler in list(session.end_handlers):
            await _call(handler)

    def on_terminal_data(self, session: TerminalSession, handler: DataHandler) -> None:
        """Register an output handler. Output relay starts with the first one."""
        session.data_handlers.append(handler)
        if session.reader is None and not session.detached:
            session.reader = asyncio.create_task(self._read_loop(session))

    def on_terminal_end(self, session: TerminalSession, handler: EndHandler) -> None:
        session.end_handlers.append(handler)

    async def write_to_terminal(self, session: TerminalSession, data: bytes | str) -> None:
        if session.detached:
            raise NotFoundError("TerminalSession", session.exec_id, "session is detached")
        if isinstance(data, str):
            data = data.encode("utf-8")
        await session.stream.write(data)

    async def resize_terminal(self, session: TerminalSession, cols: int, rows: int) -> None:
        """Resize the TTY. Failures are logged and never raised."""
        try:
            await self.runtime.resize_terminal(session.exec_id, cols, rows)
            session.dimensions = (cols, rows)
        except Exception as e:
            logger.warning(
                "terminal_resize_failed",
                exec_id=session.exec_id,
                cols=cols,
                rows=rows,
                error=str(e),
            )

    async def detach_terminal(self, session: TerminalSession) -> None:
        """Close the session. Safe to call more than once."""
        if session.detached:
            return
        session.detached = True

        if session.reader is not None and not session.reader.done():
            session.reader.cancel()
            try:
                await session.reader
            except asyncio.CancelledError:
                pass

        try:
            await session.stream.close()
        except Exception as e:
            logger.debug("terminal_close_failed", exec_id=session.exec_id, error=str(e))

        logger.info("terminal_detached", container_id=session.container_id, exec_id=session.exec_id)


async def handle_client_frame(
    relay: TerminalRelay, session: TerminalSession, frame: bytes | str
) -> None:
    """Route one client frame to stdin or to a resize.

    Text and binary frames are both checked for a resize message. A binary
    frame that is not valid UTF-8 goes to stdin untouched.
    """
    if isinstance(frame, str):
        text: str | None = frame
    else:
        try:
            text = frame.decode("utf-8")
        except UnicodeDecodeError:
            text = None

    resize = parse_control_frame(text) if text is not None else None
    if resize is not None:
        await relay.resize_terminal(session, resize.cols, resize.rows)
        return
    await relay.write_to_terminal(session, frame)


class TerminalChannel(Protocol):
    """Remote end of a terminal, e.g. a websocket."""

    async def receive(self) -> bytes | str | None:
        """Next client frame, or None when the client went away."""
        ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class TerminalBridge:
    """Pumps a remote channel to a terminal session until either side ends."""

    def __init__(self, relay: TerminalRelay, channel: TerminalChannel):
        self.relay = relay
        self.channel = channel

    async def run(self, container_id: str) -> None:
        try:
            session = await self.relay.attach_terminal(container_id)
        except NotFoundError:
            await self.channel.close(1008, "Container not found")
            return
        except ResourceError as e:
            await self.channel.close(1011, str(e))
            return

        ended = asyncio.Event()

        async def forward_output(data: bytes) -> None:
            try:
                await self.channel.send_bytes(data)
            except Exception as e:
                logger.debug("terminal_client_send_failed", exec_id=session.exec_id, error=str(e))

        self.relay.on_terminal_end(session, ended.set)
        self.relay.on_terminal_data(session, forward_output)

        pump = asyncio.create_task(self._pump_input(session))
        waiter = asyncio.create_task(ended.wait())
        try:
            await asyncio.wait({pump, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pump, waiter):
                task.cancel()
            await asyncio.gather(pump, waiter, return_exceptions=True)
            await self.relay.detach_terminal(session)

        reason = "Terminal session ended" if ended.is_set() else "Client disconnected"
        try:
            await self.channel.close(1000, reason)
        except Exception as e:
            logger.debug("terminal_client_close_failed", error=str(e))

    async def _pump_input(self, session: TerminalSession) -> None:
        while True:
            frame = await self.channel.receive()
            if frame is None:
                return
            await handle_client_frame(self.relay, session, frame)

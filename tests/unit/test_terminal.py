import asyncio

import pytest
import pytest_asyncio

from agent_orchestrator.errors import NotFoundError, ResourceError
from agent_orchestrator.models import ContainerCreateOptions
from agent_orchestrator.terminal import (
    SHELL_COMMAND,
    ResizeFrame,
    TerminalBridge,
    TerminalRelay,
    handle_client_frame,
    parse_control_frame,
)


class FakeChannel:
    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.closed_with: tuple[int, str] | None = None

    async def receive(self):
        return await self.incoming.get()

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)


@pytest.fixture
def relay(runtime, containers):
    return TerminalRelay(runtime, containers)


@pytest_asyncio.fixture
async def running(containers):
    container = await containers.create_container(ContainerCreateOptions(image="img", name="shell"))
    await containers.start_container(container.id)
    return container


class TestParseControlFrame:
    def test_resize_frame(self):
        assert parse_control_frame('{"type": "resize", "cols": 120, "rows": 40}') == ResizeFrame(120, 40)

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "{malformed",
            '"resize"',
            '{"type": "resize", "cols": 80}',
            '{"type": "resize", "cols": 80, "rows": 24, "extra": 1}',
            '{"type": "input", "cols": 80, "rows": 24}',
            '{"type": "resize", "cols": 0, "rows": 24}',
            '{"type": "resize", "cols": "80", "rows": 24}',
            '{"type": "resize", "cols": true, "rows": 24}',
            '{"type": "resize", "cols": 80.5, "rows": 24}',
        ],
    )
    def test_anything_else_is_not_a_control_frame(self, text):
        assert parse_control_frame(text) is None


class TestTerminalRelay:
    @pytest.mark.asyncio
    async def test_attach_opens_shell(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        assert session.container_id == running.id
        assert session.exec_id == runtime.terminals[0].exec_id
        assert SHELL_COMMAND == ["/bin/sh"]

    @pytest.mark.asyncio
    async def test_attach_requires_running_container(self, relay, containers):
        created = await containers.create_container(ContainerCreateOptions(image="img", name="idle"))

        with pytest.raises(NotFoundError):
            await relay.attach_terminal(created.id)
        with pytest.raises(NotFoundError):
            await relay.attach_terminal("missing")

    @pytest.mark.asyncio
    async def test_attach_runtime_failure(self, relay, runtime, running):
        async def broken(runtime_id, command):
            raise RuntimeError("exec create failed")

        runtime.open_terminal = broken

        with pytest.raises(ResourceError):
            await relay.attach_terminal(running.id)

    @pytest.mark.asyncio
    async def test_output_relayed_to_handlers_until_end(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)
        received: list[bytes] = []
        ended = asyncio.Event()
        relay.on_terminal_end(session, ended.set)
        relay.on_terminal_data(session, received.append)

        stream = runtime.terminals[0]
        stream.feed(b"$ ")
        stream.feed(b"hello\r\n")
        stream.end()
        await asyncio.wait_for(ended.wait(), timeout=1)

        assert received == [b"$ ", b"hello\r\n"]
        assert session.ended

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_relay(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)
        received: list[bytes] = []

        def broken(data):
            raise RuntimeError("client gone")

        ended = asyncio.Event()
        relay.on_terminal_end(session, ended.set)
        relay.on_terminal_data(session, broken)
        relay.on_terminal_data(session, received.append)
        runtime.terminals[0].feed(b"data")
        runtime.terminals[0].end()
        await asyncio.wait_for(ended.wait(), timeout=1)

        assert received == [b"data"]

    @pytest.mark.asyncio
    async def test_write_encodes_text(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        await relay.write_to_terminal(session, "ls\n")
        await relay.write_to_terminal(session, b"\x03")

        assert runtime.terminals[0].written == [b"ls\n", b"\x03"]

    @pytest.mark.asyncio
    async def test_resize_failure_is_swallowed(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)
        runtime.resize_error = RuntimeError("exec gone")

        await relay.resize_terminal(session, 100, 30)

        assert session.dimensions is None

    @pytest.mark.asyncio
    async def test_detach_is_idempotent(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)
        relay.on_terminal_data(session, lambda data: None)

        await relay.detach_terminal(session)
        await relay.detach_terminal(session)

        assert runtime.terminals[0].closed
        assert session.reader.done()
        with pytest.raises(NotFoundError):
            await relay.write_to_terminal(session, b"x")


class TestHandleClientFrame:
    @pytest.mark.asyncio
    async def test_resize_frame_is_not_forwarded(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        await handle_client_frame(relay, session, '{"type": "resize", "cols": 100, "rows": 30}')

        assert runtime.resizes == [(session.exec_id, 100, 30)]
        assert session.dimensions == (100, 30)
        assert runtime.terminals[0].written == []

    @pytest.mark.asyncio
    async def test_malformed_json_forwarded_verbatim(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        await handle_client_frame(relay, session, '{"type": "resize"')
        await handle_client_frame(relay, session, b"\x1b[A")

        assert runtime.terminals[0].written == [b'{"type": "resize"', b"\x1b[A"]
        assert runtime.resizes == []

    @pytest.mark.asyncio
    async def test_binary_resize_frame_is_not_forwarded(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        await handle_client_frame(relay, session, b'{"type":"resize","cols":80,"rows":24}')

        assert runtime.resizes == [(session.exec_id, 80, 24)]
        assert runtime.terminals[0].written == []

    @pytest.mark.asyncio
    async def test_non_utf8_binary_frame_forwarded(self, relay, runtime, running):
        session = await relay.attach_terminal(running.id)

        await handle_client_frame(relay, session, b"\xff\xfe")

        assert runtime.terminals[0].written == [b"\xff\xfe"]
        assert runtime.resizes == []


class TestTerminalBridge:
    @pytest.mark.asyncio
    async def test_unknown_container_closes_with_policy_violation(self, relay):
        channel = FakeChannel()

        await TerminalBridge(relay, channel).run("missing")

        assert channel.closed_with == (1008, "Container not found")

    @pytest.mark.asyncio
    async def test_relays_both_directions_until_client_leaves(self, relay, runtime, running):
        channel = FakeChannel()
        bridge = asyncio.create_task(TerminalBridge(relay, channel).run(running.id))
        while not runtime.terminals:
            await asyncio.sleep(0)
        stream = runtime.terminals[0]

        stream.feed(b"prompt$ ")
        await channel.incoming.put(b"echo hi\n")
        await channel.incoming.put('{"type": "resize", "cols": 90, "rows": 20}')
        while not stream.written or not channel.sent or not runtime.resizes:
            await asyncio.sleep(0)
        await channel.incoming.put(None)
        await asyncio.wait_for(bridge, timeout=1)

        assert channel.sent == [b"prompt$ "]
        assert stream.written == [b"echo hi\n"]
        assert runtime.resizes == [(stream.exec_id, 90, 20)]
        assert stream.closed
        assert channel.closed_with == (1000, "Client disconnected")

    @pytest.mark.asyncio
    async def test_closes_client_when_shell_exits(self, relay, runtime, running):
        channel = FakeChannel()
        bridge = asyncio.create_task(TerminalBridge(relay, channel).run(running.id))
        while not runtime.terminals:
            await asyncio.sleep(0)

        runtime.terminals[0].end()
        await asyncio.wait_for(bridge, timeout=1)

        assert channel.closed_with == (1000, "Terminal session ended")

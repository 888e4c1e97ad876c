import asyncio
from collections.abc import AsyncGenerator
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import docker
import docker.errors
import structlog

from agent_orchestrator.runtime.base import ContainerSpec, ExecResult, RuntimeContainerInfo

logger = structlog.get_logger()

TERMINAL_READ_SIZE = 4096


class DockerTerminalStream:
    """TTY exec socket. With a TTY the stream is raw, no multiplex headers."""

    def __init__(self, runtime: "DockerRuntime", exec_id: str, sock: Any):
        self.exec_id = exec_id
        self._runtime = runtime
        self._sock = sock
        # docker-py returns a SocketIO wrapper over unix sockets
        self._raw = getattr(sock, "_sock", sock)
        self._closed = False

    async def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            return await self._runtime._run(self._raw.recv, TERMINAL_READ_SIZE)
        except OSError:
            if self._closed:
                return b""
            raise

    async def write(self, data: bytes) -> None:
        await self._runtime._run(self._raw.sendall, data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._runtime._run(self._sock.close)


class DockerRuntime:
    """
    Async wrapper around blocking docker-py client.
    Every engine call is dispatched to a thread pool so it is a suspension point.
    """

    def __init__(self, base_url: str | None = None, max_workers: int = 8):
        self._client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def _run(self, func, *args, **kwargs):
        """Run blocking function in thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def _get(self, runtime_id: str) -> Any:
        return await self._run(self._client.containers.get, runtime_id)

    async def create(self, spec: ContainerSpec) -> str:
        kwargs: dict[str, Any] = {
            "name": spec.name,
            "environment": spec.env,
            "volumes": spec.binds,
            "working_dir": spec.working_dir,
            "detach": True,
            "tty": True,
            "stdin_open": True,
        }
        if spec.command:
            kwargs["command"] = spec.command
        if spec.nano_cpus is not None:
            kwargs["nano_cpus"] = spec.nano_cpus
        if spec.memory is not None:
            kwargs["mem_limit"] = spec.memory

        container = await self._run(self._client.containers.create, spec.image, **kwargs)
        logger.debug("docker_container_created", runtime_id=container.id, name=spec.name)
        return container.id

    async def start(self, runtime_id: str) -> None:
        container = await self._get(runtime_id)
        await self._run(container.start)

    async def stop(self, runtime_id: str, timeout: int = 10) -> None:
        container = await self._get(runtime_id)
        await self._run(container.stop, timeout=timeout)

    async def kill(self, runtime_id: str) -> None:
        container = await self._get(runtime_id)
        await self._run(container.kill)

    async def remove(self, runtime_id: str, force: bool = False) -> None:
        try:
            container = await self._get(runtime_id)
            await self._run(container.remove, force=force, v=True)
        except docker.errors.NotFound:
            logger.debug("docker_container_already_gone", runtime_id=runtime_id)

    @staticmethod
    def _info(container: Any) -> RuntimeContainerInfo:
        state = container.attrs.get("State", {})
        image = container.attrs.get("Config", {}).get("Image", "")
        return RuntimeContainerInfo(
            id=container.id,
            name=container.name,
            image=image,
            state=state.get("Status", container.status),
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
        )

    async def inspect(self, runtime_id: str) -> RuntimeContainerInfo:
        # get() fetches a fresh object, attrs are current
        return self._info(await self._get(runtime_id))

    async def list_containers(self, all: bool = False) -> list[RuntimeContainerInfo]:
        containers = await self._run(self._client.containers.list, all=all)
        return [self._info(c) for c in containers]

    async def exec(
        self,
        runtime_id: str,
        command: list[str],
        tty: bool = False,
        workdir: str | None = None,
    ) -> ExecResult:
        """Run a command to completion.

        Without a TTY stdout and stderr are demultiplexed; with a TTY the
        engine merges them into one stream, returned as stdout.
        """
        api = self._client.api
        exec_info = await self._run(
            api.exec_create,
            runtime_id,
            command,
            stdout=True,
            stderr=True,
            tty=tty,
            workdir=workdir,
        )
        exec_id = exec_info["Id"]
        output = await self._run(api.exec_start, exec_id, tty=tty, demux=not tty)
        inspected = await self._run(api.exec_inspect, exec_id)

        if tty:
            stdout_bytes, stderr_bytes = output or b"", b""
        else:
            stdout_bytes, stderr_bytes = output if output else (None, None)

        return ExecResult(
            exit_code=inspected.get("ExitCode") or 0,
            stdout=(stdout_bytes or b"").decode("utf-8", errors="replace"),
            stderr=(stderr_bytes or b"").decode("utf-8", errors="replace"),
        )

    async def open_terminal(self, runtime_id: str, command: list[str]) -> DockerTerminalStream:
        api = self._client.api
        exec_info = await self._run(
            api.exec_create,
            runtime_id,
            command,
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
        )
        exec_id = exec_info["Id"]
        sock = await self._run(api.exec_start, exec_id, tty=True, socket=True)
        logger.debug("docker_terminal_opened", runtime_id=runtime_id, exec_id=exec_id)
        return DockerTerminalStream(self, exec_id, sock)

    async def resize_terminal(self, exec_id: str, cols: int, rows: int) -> None:
        await self._run(self._client.api.exec_resize, exec_id, height=rows, width=cols)

    async def logs(
        self,
        runtime_id: str,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> AsyncGenerator[bytes, None]:
        container = await self._get(runtime_id)
        stream = await self._run(
            container.logs,
            stream=True,
            follow=follow,
            tail=tail if tail is not None else "all",
            timestamps=timestamps,
        )
        try:
            while True:
                chunk = await self._run(next, stream, None)
                if chunk is None:
                    return
                yield chunk
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._client.close()

import pytest
import pytest_asyncio

from agent_orchestrator.containers import WORKSPACE_MOUNT
from agent_orchestrator.errors import NotFoundError, ResourceError, StateConflictError
from agent_orchestrator.events import ContainerStatusChanged
from agent_orchestrator.log_parser import LogLevel
from agent_orchestrator.models import ContainerCreateOptions, ContainerStatus
from agent_orchestrator.runtime.base import ExecResult


@pytest_asyncio.fixture
async def workspace(workspaces):
    return await workspaces.create_workspace(worker_id="w1", task_id="t1")


@pytest_asyncio.fixture
async def container(containers, workspace):
    return await containers.create_container(
        ContainerCreateOptions(image="sandbox:latest", name="agent-1", workspace_id=workspace.id)
    )


@pytest_asyncio.fixture
async def running(containers, container):
    await containers.start_container(container.id)
    return container


class TestCreateContainer:
    @pytest.mark.asyncio
    async def test_create_records_creating_status(self, containers, container, published):
        status = containers.get_container_status(container.id)

        assert status.status == ContainerStatus.CREATING
        assert status.image == "sandbox:latest"
        assert status.name == "agent-1"
        assert isinstance(published[-1], ContainerStatusChanged)
        assert published[-1].old_status is None
        assert published[-1].new_status == "creating"

    @pytest.mark.asyncio
    async def test_workspace_is_bind_mounted(self, runtime, workspace, container):
        spec = runtime.specs[-1]

        assert spec.binds == [f"{workspace.path}:{WORKSPACE_MOUNT}"]
        assert spec.working_dir == WORKSPACE_MOUNT

    @pytest.mark.asyncio
    async def test_resource_limits_are_converted(self, containers, runtime):
        await containers.create_container(
            ContainerCreateOptions(image="img", name="limited", cpu_limit=1.5, memory_limit=512 * 1024 * 1024)
        )

        spec = runtime.specs[-1]
        assert spec.nano_cpus == 1_500_000_000
        assert spec.memory == 512 * 1024 * 1024
        assert spec.binds == []

    @pytest.mark.asyncio
    async def test_unknown_workspace_raises_not_found(self, containers, runtime):
        with pytest.raises(NotFoundError):
            await containers.create_container(
                ContainerCreateOptions(image="img", name="x", workspace_id="missing")
            )

        assert runtime.specs == []

    @pytest.mark.asyncio
    async def test_workspace_bound_once(self, containers, workspace, container):
        with pytest.raises(StateConflictError):
            await containers.create_container(
                ContainerCreateOptions(image="img", name="second", workspace_id=workspace.id)
            )

    @pytest.mark.asyncio
    async def test_runtime_failure_keeps_no_record(self, containers, runtime):
        runtime.create_error = RuntimeError("image not found")

        with pytest.raises(ResourceError, match="image not found"):
            await containers.create_container(ContainerCreateOptions(image="img", name="x"))

        assert containers.list_containers() == []


class TestStartContainer:
    @pytest.mark.asyncio
    async def test_start_moves_to_running(self, containers, container):
        await containers.start_container(container.id)

        assert container.status == ContainerStatus.RUNNING
        assert container.started_at is not None

    @pytest.mark.asyncio
    async def test_start_failure_marks_error(self, containers, runtime, container):
        runtime.start_error = RuntimeError("port in use")

        with pytest.raises(ResourceError):
            await containers.start_container(container.id)

        assert container.status == ContainerStatus.ERROR

    @pytest.mark.asyncio
    async def test_start_running_container_conflicts(self, containers, running):
        with pytest.raises(StateConflictError):
            await containers.start_container(running.id)

    @pytest.mark.asyncio
    async def test_start_removing_container_conflicts(self, containers, container):
        container.status = ContainerStatus.REMOVING

        with pytest.raises(StateConflictError):
            await containers.start_container(container.id)

    @pytest.mark.asyncio
    async def test_unknown_container_raises_not_found(self, containers):
        with pytest.raises(NotFoundError):
            await containers.start_container("missing")


class TestStopContainer:
    @pytest.mark.asyncio
    async def test_graceful_stop(self, containers, runtime, running):
        await containers.stop_container(running.id)

        assert running.status == ContainerStatus.STOPPED
        assert running.stopped_at is not None
        assert ("kill", running.runtime_id) not in runtime.calls

    @pytest.mark.asyncio
    async def test_stop_error_escalates_to_kill(self, containers, runtime, running):
        runtime.stop_error = RuntimeError("daemon error")

        await containers.stop_container(running.id)

        assert ("kill", running.runtime_id) in runtime.calls
        assert running.status == ContainerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_slow_stop_escalates_to_kill(self, containers, runtime, running):
        runtime.stop_delay = 5

        await containers.stop_container(running.id, timeout_seconds=0)

        assert ("kill", running.runtime_id) in runtime.calls
        assert running.status == ContainerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_kill_failure_leaves_error(self, containers, runtime, running):
        runtime.stop_error = RuntimeError("daemon error")
        runtime.kill_error = RuntimeError("still alive")

        with pytest.raises(ResourceError, match="still alive"):
            await containers.stop_container(running.id)

        assert running.status == ContainerStatus.ERROR
        # Exactly one forced kill, no automatic retry
        assert [c for c in runtime.calls if c[0] == "kill"] == [("kill", running.runtime_id)]

    @pytest.mark.asyncio
    async def test_stop_created_container_conflicts(self, containers, container):
        with pytest.raises(StateConflictError):
            await containers.stop_container(container.id)


class TestRemoveContainer:
    @pytest.mark.asyncio
    async def test_remove_stopped_container(self, containers, running, published):
        await containers.stop_container(running.id)

        await containers.remove_container(running.id)

        assert containers.get_container_status(running.id) is None
        assert published[-1].new_status == "removing"

    @pytest.mark.asyncio
    async def test_remove_running_requires_force(self, containers, running):
        with pytest.raises(StateConflictError):
            await containers.remove_container(running.id)

        await containers.remove_container(running.id, force=True)
        assert containers.get_container_status(running.id) is None

    @pytest.mark.asyncio
    async def test_remove_failure_marks_error(self, containers, runtime, container):
        runtime.remove_error = RuntimeError("device busy")

        with pytest.raises(ResourceError):
            await containers.remove_container(container.id)

        assert container.status == ContainerStatus.ERROR
        assert containers.find_by_status(ContainerStatus.ERROR) == [container]

    @pytest.mark.asyncio
    async def test_removed_workspace_can_be_bound_again(self, containers, workspace, container):
        await containers.remove_container(container.id)

        again = await containers.create_container(
            ContainerCreateOptions(image="img", name="again", workspace_id=workspace.id)
        )
        assert containers.find_by_workspace_id(workspace.id) is again


class TestExec:
    @pytest.mark.asyncio
    async def test_exec_in_running_container(self, containers, runtime, running):
        runtime.exec_handler = lambda argv: ExecResult(0, "hello\n", "")

        result = await containers.exec(running.id, ["echo", "hello"])

        assert result.success
        assert result.stdout == "hello\n"
        assert runtime.exec_calls == [["echo", "hello"]]

    @pytest.mark.asyncio
    async def test_exec_requires_running(self, containers, container):
        with pytest.raises(StateConflictError):
            await containers.exec(container.id, ["ls"])

    @pytest.mark.asyncio
    async def test_exec_runtime_failure(self, containers, runtime, running):
        def fail(argv):
            raise RuntimeError("exec failed")

        runtime.exec_handler = fail

        with pytest.raises(ResourceError, match="exec failed"):
            await containers.exec(running.id, ["ls"])


class TestLogs:
    @pytest.mark.asyncio
    async def test_get_logs_unknown_raises_eagerly(self, containers):
        with pytest.raises(NotFoundError):
            containers.get_logs("missing")

    @pytest.mark.asyncio
    async def test_aclose_releases_runtime_stream(self, containers, runtime, running):
        runtime.log_chunks = [b"first\n", b"second\n"]

        logs = containers.get_logs(running.id, follow=True)
        first = await logs.__anext__()
        await logs.aclose()

        assert first == b"first\n"
        assert runtime.logs_closed

    @pytest.mark.asyncio
    async def test_stream_log_entries_splits_chunks(self, containers, runtime, running):
        runtime.log_chunks = [
            b"2024-01-01T00:00:00.000Z Starting\n2024-01-01T00:00:01.000Z ERR",
            b"OR: crashed\n\n",
            b"2024-01-01T00:00:02.000Z tail",
        ]

        entries = [e async for e in containers.stream_log_entries(running.id)]

        assert [e.message for e in entries] == ["Starting", "ERROR: crashed", "tail"]
        assert entries[0].timestamp == "2024-01-01T00:00:00.000Z"
        assert entries[1].level == LogLevel.ERROR
        assert runtime.logs_closed


class TestLookups:
    @pytest.mark.asyncio
    async def test_find_by_execution_id(self, containers):
        container = await containers.create_container(
            ContainerCreateOptions(image="img", name="x", execution_id="e1")
        )

        assert containers.find_by_execution_id("e1") is container
        assert containers.find_by_execution_id("e2") is None

import asyncio

import pytest

from agent_orchestrator.errors import NotFoundError, StateConflictError
from agent_orchestrator.events import ExecutionMetricsUpdated, ExecutionStatusChanged
from agent_orchestrator.models import ExecutionStatus


class TestExecutionLifecycle:
    @pytest.mark.asyncio
    async def test_create_starts_pending(self, executions, published):
        execution = await executions.create_execution("w1", "t1")

        assert execution.status == ExecutionStatus.PENDING
        assert execution.started_at is None
        assert isinstance(published[-1], ExecutionStatusChanged)
        assert published[-1].old_status is None
        assert published[-1].new_status == "pending"

    @pytest.mark.asyncio
    async def test_worker_with_active_execution_rejects_another(self, executions):
        first = await executions.create_execution("w1", "t1")
        await executions.update_status(first.id, ExecutionStatus.RUNNING)

        with pytest.raises(StateConflictError) as exc:
            await executions.create_execution("w1", "t2")

        assert exc.value.entity == "Worker"
        assert executions.find_by_worker_id("w1") == [first]

    @pytest.mark.asyncio
    async def test_worker_can_start_again_after_terminal(self, executions):
        first = await executions.create_execution("w1", "t1")
        await executions.update_status(first.id, ExecutionStatus.ERROR, error="boom")

        second = await executions.create_execution("w1", "t2")

        assert second.status == ExecutionStatus.PENDING
        assert executions.find_by_worker_id("w1") == [first, second]

    @pytest.mark.asyncio
    async def test_running_then_success_sets_timestamps_and_duration(self, executions):
        execution = await executions.create_execution("w1", "t1")

        await executions.update_status(execution.id, ExecutionStatus.RUNNING)
        assert execution.started_at is not None
        await asyncio.sleep(0.02)
        await executions.update_status(execution.id, ExecutionStatus.SUCCESS)

        assert execution.completed_at >= execution.started_at
        assert execution.duration_ms == int(
            (execution.completed_at - execution.started_at).total_seconds() * 1000
        )
        assert execution.duration_ms >= 10

    @pytest.mark.asyncio
    async def test_terminal_from_pending_backfills_started_at(self, executions):
        execution = await executions.create_execution("w1", "t1")

        await executions.update_status(execution.id, ExecutionStatus.ERROR, error="boom")

        assert execution.started_at == execution.completed_at
        assert execution.duration_ms == 0
        assert execution.error == "boom"

    @pytest.mark.asyncio
    async def test_repeating_running_is_noop(self, executions, published):
        execution = await executions.create_execution("w1", "t1")
        await executions.update_status(execution.id, ExecutionStatus.RUNNING)
        started_at = execution.started_at
        count = len(published)

        await executions.update_status(execution.id, ExecutionStatus.RUNNING)

        assert execution.started_at == started_at
        assert len(published) == count

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "terminal", [ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED]
    )
    async def test_terminal_status_is_final(self, executions, terminal):
        execution = await executions.create_execution("w1", "t1")
        await executions.update_status(execution.id, terminal)

        for target in ExecutionStatus:
            with pytest.raises(StateConflictError):
                await executions.update_status(execution.id, target)

        assert execution.status == terminal

    @pytest.mark.asyncio
    async def test_running_cannot_go_back_to_pending(self, executions):
        execution = await executions.create_execution("w1", "t1")
        await executions.update_status(execution.id, ExecutionStatus.RUNNING)

        with pytest.raises(StateConflictError):
            await executions.update_status(execution.id, ExecutionStatus.PENDING)

    @pytest.mark.asyncio
    async def test_unknown_execution_raises_not_found(self, executions):
        with pytest.raises(NotFoundError):
            await executions.update_status("missing", ExecutionStatus.RUNNING)


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, executions, published):
        execution = await executions.create_execution("w1", "t1")
        await executions.update_status(execution.id, ExecutionStatus.RUNNING)

        await executions.cancel(execution.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.error == "cancelled"
        assert execution.completed_at is not None
        assert published[-1].new_status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_finished_execution_conflicts(self, executions):
        execution = await executions.create_execution("w1", "t1")
        await executions.update_status(execution.id, ExecutionStatus.SUCCESS)

        with pytest.raises(StateConflictError):
            await executions.cancel(execution.id)


class TestMetrics:
    @pytest.mark.asyncio
    async def test_deltas_accumulate(self, executions, published):
        execution = await executions.create_execution("w1", "t1")

        await executions.update_metrics(execution.id, tokens_used=100, tool_calls_count=2)
        await executions.update_metrics(execution.id, tokens_used=50, cost_usd=0.25, tool_calls_count=1)

        assert execution.tokens_used == 150
        assert execution.tool_calls_count == 3
        assert execution.cost_usd == pytest.approx(0.25)
        event = published[-1]
        assert isinstance(event, ExecutionMetricsUpdated)
        assert event.tokens_used == 150

    @pytest.mark.asyncio
    async def test_negative_delta_rejected(self, executions):
        execution = await executions.create_execution("w1", "t1")

        with pytest.raises(ValueError):
            await executions.update_metrics(execution.id, tokens_used=-1)

        assert execution.tokens_used == 0


class TestQueries:
    @pytest.mark.asyncio
    async def test_find_helpers(self, executions):
        first = await executions.create_execution("w1", "t1")
        second = await executions.create_execution("w2", "t1")
        await executions.update_status(second.id, ExecutionStatus.RUNNING)

        assert executions.find_by_worker_id("w1") == [first]
        assert set(e.id for e in executions.find_by_task_id("t1")) == {first.id, second.id}
        assert executions.find_by_statuses([ExecutionStatus.RUNNING]) == [second]
        assert executions.find_recent(limit=1) == [second]
        assert executions.get_execution("missing") is None

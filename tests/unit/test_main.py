"""Unit tests for CLI commands with the orchestrator mocked out."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from agent_orchestrator.admission import AdmissionScope
from agent_orchestrator.agent.engine import AgentResult
from agent_orchestrator.config import Settings
from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.main import app, build_services
from agent_orchestrator.models import ExecutionStatus
from agent_orchestrator.orchestrator import TaskRunOutcome

runner = CliRunner()


def success_outcome() -> TaskRunOutcome:
    return TaskRunOutcome(
        task_id="t1",
        admitted=True,
        worker_id="w1",
        execution_id="e1",
        status=ExecutionStatus.SUCCESS,
        result=AgentResult(success=True, iterations=2, tool_calls_count=3, final_message="Done", tokens_used=99),
    )


@patch("agent_orchestrator.main.setup_logging")
class TestRunCommand:
    @patch("agent_orchestrator.main._run", new_callable=AsyncMock)
    def test_run_json(self, mock_run, _setup_logging):
        """run --json prints the outcome as JSON."""
        mock_run.return_value = success_outcome()

        result = runner.invoke(app, ["run", "t1", "--repo", "r1", "--user", "alice", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["tool_calls_count"] == 3
        assert data["tokens_used"] == 99
        mock_run.assert_awaited_once_with("t1", "r1", "alice")

    @patch("agent_orchestrator.main._run", new_callable=AsyncMock)
    def test_run_human_output(self, mock_run, _setup_logging):
        mock_run.return_value = success_outcome()

        result = runner.invoke(app, ["run", "t1"])

        assert result.exit_code == 0
        assert "success" in result.output
        assert "Done" in result.output

    @patch("agent_orchestrator.main._run", new_callable=AsyncMock)
    def test_refused_admission_exits_nonzero(self, mock_run, _setup_logging):
        mock_run.return_value = TaskRunOutcome(
            task_id="t1",
            admitted=False,
            exhausted_scope=AdmissionScope.USER,
            reason="Per-user limit reached for alice (5)",
        )

        result = runner.invoke(app, ["run", "t1"])

        assert result.exit_code == 1
        assert "Not admitted" in result.output

    @patch("agent_orchestrator.main._run", new_callable=AsyncMock)
    def test_configuration_error_exits_nonzero(self, mock_run, _setup_logging):
        mock_run.side_effect = ConfigurationError("API key is required for provider openai")

        result = runner.invoke(app, ["run", "t1"])

        assert result.exit_code == 1
        assert "API key is required" in result.output


def configured() -> Settings:
    return Settings(
        _env_file=None,
        max_global_workers=8,
        max_workers_per_repo=2,
        max_workers_per_user=4,
        llm_provider="ollama",
        llm_model="llama3",
        sandbox_image="sandbox:test",
    )


@patch("agent_orchestrator.main.get_settings", side_effect=configured)
class TestConfigCommand:
    def test_config_json_reports_ceilings(self, _get_settings):
        result = runner.invoke(app, ["config", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["admission_ceilings"] == {"global": 8, "per_repo": 2, "per_user": 4}
        assert data["llm_provider"] == "ollama"
        assert data["llm_model"] == "llama3"
        assert data["sandbox_image"] == "sandbox:test"
        assert "current" not in result.output

    def test_config_table(self, _get_settings):
        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "Admission ceilings" in result.output
        assert "In flight" not in result.output
        assert "per repo" in result.output
        assert "ollama (llama3)" in result.output

    def test_status_command_is_gone(self, _get_settings):
        result = runner.invoke(app, ["status"])

        assert result.exit_code != 0


class TestBuildServices:
    @patch("agent_orchestrator.main.DockerRuntime")
    def test_wires_components_from_settings(self, mock_runtime_cls):
        mock_runtime_cls.return_value = MagicMock()
        settings = Settings(
            _env_file=None,
            llm_provider="openai",
            llm_api_key="sk-test",
            max_global_workers=4,
            redis_url=None,
        )

        services = build_services(settings)

        assert services.admission.max_global == 4
        assert services.events.redis is None
        assert services.orchestrator.provider.name == "openai"
        assert services.orchestrator.sandbox_image == settings.sandbox_image
        mock_runtime_cls.assert_called_once_with(base_url=settings.docker_base_url)

"""Command line entry point."""

import asyncio
from dataclasses import dataclass
import json as json_lib

import redis.asyncio as redis
from rich.console import Console
from rich.table import Table
import typer

from agent_orchestrator.admission import AdmissionController
from agent_orchestrator.config import Settings, get_settings
from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.errors import OrchestratorError
from agent_orchestrator.events import EventHub
from agent_orchestrator.executions import ExecutionTracker
from agent_orchestrator.lifecycle import LifecycleReaper
from agent_orchestrator.llm.factory import create_provider_from_settings
from agent_orchestrator.logging_config import setup_logging
from agent_orchestrator.orchestrator import TaskOrchestrator, TaskRunOutcome
from agent_orchestrator.runtime.docker_runtime import DockerRuntime
from agent_orchestrator.tasks import ApiTaskStore
from agent_orchestrator.terminal import TerminalRelay
from agent_orchestrator.workers import WorkerPool
from agent_orchestrator.workspaces import WorkspaceManager

app = typer.Typer()
console = Console()


@dataclass
class Services:
    events: EventHub
    admission: AdmissionController
    orchestrator: TaskOrchestrator
    terminal: TerminalRelay
    reaper: LifecycleReaper
    runtime: DockerRuntime


def build_services(settings: Settings | None = None) -> Services:
    """Construct one orchestrator instance from settings."""
    settings = settings or get_settings()

    redis_client = redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
    events = EventHub(redis_client, prefix=settings.events_prefix)
    runtime = DockerRuntime(base_url=settings.docker_base_url)

    admission = AdmissionController(
        max_global=settings.max_global_workers,
        max_per_repo=settings.max_workers_per_repo,
        max_per_user=settings.max_workers_per_user,
    )
    workspaces = WorkspaceManager(settings.workspace_base_dir, settings.workspace_max_age_seconds)
    containers = ContainerManager(runtime, workspaces, events, settings.stop_kill_grace_seconds)

    orchestrator = TaskOrchestrator(
        admission=admission,
        workers=WorkerPool(events),
        workspaces=workspaces,
        containers=containers,
        executions=ExecutionTracker(events),
        task_store=ApiTaskStore(settings.api_url),
        provider=create_provider_from_settings(settings),
        sandbox_image=settings.sandbox_image,
        max_iterations=settings.agent_max_iterations,
        command_timeout_seconds=settings.command_timeout_seconds,
    )
    return Services(
        events=events,
        admission=admission,
        orchestrator=orchestrator,
        terminal=TerminalRelay(runtime, containers),
        reaper=LifecycleReaper(workspaces, containers, settings.reaper_interval_seconds),
        runtime=runtime,
    )


def _outcome_dict(outcome: TaskRunOutcome) -> dict:
    data = {
        "task_id": outcome.task_id,
        "admitted": outcome.admitted,
        "exhausted_scope": outcome.exhausted_scope.value if outcome.exhausted_scope else None,
        "reason": outcome.reason,
        "worker_id": outcome.worker_id,
        "execution_id": outcome.execution_id,
        "status": outcome.status.value if outcome.status else None,
    }
    if outcome.result is not None:
        data.update(
            success=outcome.result.success,
            iterations=outcome.result.iterations,
            tool_calls_count=outcome.result.tool_calls_count,
            tokens_used=outcome.result.tokens_used,
            final_message=outcome.result.final_message,
            error=outcome.result.error,
        )
    return data


async def _run(task_id: str, repo_id: str | None, user_id: str | None) -> TaskRunOutcome:
    services = build_services()
    await services.reaper.start()
    try:
        return await services.orchestrator.run_task(task_id, repo_id=repo_id, user_id=user_id)
    finally:
        await services.reaper.stop()
        services.runtime.close()


@app.callback()
def callback():
    """
    Agent Orchestrator CLI
    """


@app.command()
def run(
    task_id: str,
    repo_id: str | None = typer.Option(None, "--repo", help="Repository the task belongs to"),
    user_id: str | None = typer.Option(None, "--user", help="User the task runs for"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Run one task through the agent loop in a fresh sandbox."""
    setup_logging()
    try:
        outcome = asyncio.run(_run(task_id, repo_id, user_id))
    except OrchestratorError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e

    if json_output:
        typer.echo(json_lib.dumps(_outcome_dict(outcome), indent=2))
    elif not outcome.admitted:
        console.print(f"[yellow]Not admitted:[/yellow] {outcome.reason}")
    else:
        status_color = "green" if outcome.result and outcome.result.success else "red"
        console.print(f"[bold]Task {task_id}[/bold] [{status_color}]{outcome.status.value}[/{status_color}]")
        console.print(f"Execution: {outcome.execution_id}")
        if outcome.result:
            console.print(
                f"Iterations: {outcome.result.iterations}  Tool calls: {outcome.result.tool_calls_count}  "
                f"Tokens: {outcome.result.tokens_used}"
            )
            if outcome.result.final_message:
                console.print(outcome.result.final_message)
            if outcome.result.error:
                console.print(f"[red]{outcome.result.error}[/red]")

    if not outcome.admitted or not outcome.result or not outcome.result.success:
        raise typer.Exit(code=1)


@app.command("config")
def show_config(json_output: bool = typer.Option(False, "--json", help="Output as JSON")):
    """Show the configured admission ceilings and backends.

    Reads settings only. Live in-flight counts belong to the process running tasks.
    """
    settings = get_settings()
    ceilings = {
        "global": settings.max_global_workers,
        "per_repo": settings.max_workers_per_repo,
        "per_user": settings.max_workers_per_user,
    }

    if json_output:
        typer.echo(
            json_lib.dumps(
                {
                    "admission_ceilings": ceilings,
                    "llm_provider": settings.llm_provider,
                    "llm_model": settings.llm_model,
                    "sandbox_image": settings.sandbox_image,
                },
                indent=2,
            )
        )
        return

    table = Table(title="Admission ceilings")
    table.add_column("Scope", style="cyan", no_wrap=True)
    table.add_column("Max", justify="right", style="magenta")
    for scope, limit in ceilings.items():
        table.add_row(scope.replace("_", " "), str(limit))
    console.print(table)
    console.print(f"LLM provider: {settings.llm_provider} ({settings.llm_model})")
    console.print(f"Sandbox image: {settings.sandbox_image}")


if __name__ == "__main__":
    app()

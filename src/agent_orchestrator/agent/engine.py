"""Agent engine - the bounded tool-calling loop that drives one task."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import inspect

import structlog

from agent_orchestrator.agent.tools import AGENT_TOOLS, AgentToolExecutor
from agent_orchestrator.cancellation import CancellationToken
from agent_orchestrator.config import get_settings
from agent_orchestrator.errors import ConfigurationError, ExecutionCancelled, ExecutionOutcomeError
from agent_orchestrator.llm.base import LLMProvider, Message
from agent_orchestrator.tasks import TaskInfo, TaskStore

logger = structlog.get_logger()

SYSTEM_PROMPT = """You are an autonomous coding agent working inside a sandboxed workspace.

Work through the task in this order:
1. Understand the task requirements
2. Explore the codebase and plan your approach
3. Make the changes using the available tools
4. Verify your changes work correctly

Available tools:
- read_file: Read file contents
- write_file: Write or create files
- edit_file: Search and replace in files
- run_command: Execute shell commands
- search_files: Find files by glob pattern
- grep: Search for text in files

Guidelines:
- Follow existing code patterns in the codebase
- Implement what is asked, nothing more
- Write tests for new functionality and run them before finishing
- Keep changes focused

When you are done, summarize what you implemented and stop requesting tools."""

ASSISTANT_PLACEHOLDER = "Using tools..."


def build_task_prompt(task: TaskInfo) -> str:
    return f"""Please implement the following task:

Task ID: {task.id}
Title: {task.title}
Priority: {task.priority}
Status: {task.status}

Description:
{task.description}

Begin by exploring the codebase to understand existing patterns, then implement the required functionality."""


@dataclass
class AgentResult:
    success: bool
    iterations: int
    tool_calls_count: int
    final_message: str | None = None
    error: str | None = None
    tokens_used: int = 0


@dataclass
class IterationMetrics:
    """Per-iteration deltas reported to the metrics callback."""

    iteration: int
    tokens_used: int
    tool_calls_count: int


MetricsCallback = Callable[[IterationMetrics], Awaitable[None] | None]


class AgentEngine:
    """Runs the tool-calling loop for one task in one workspace."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: AgentToolExecutor,
        task_store: TaskStore,
        max_iterations: int | None = None,
        on_iteration: MetricsCallback | None = None,
    ):
        self.provider = provider
        self.tools = tools
        self.task_store = task_store
        self.max_iterations = max_iterations if max_iterations is not None else get_settings().agent_max_iterations
        self.on_iteration = on_iteration

    async def load_task(self, task_id: str) -> TaskInfo:
        return await self.task_store.get_task(task_id)

    async def execute_task(self, task_id: str, cancellation: CancellationToken | None = None) -> AgentResult:
        """Run the loop until the model finishes or a bound is hit.

        Task failures (max iterations, provider or tool errors, cancellation)
        are captured in the returned result.

        Raises:
            NotFoundError: task does not exist.
            ConfigurationError: provider cannot call tools.
        """
        token = cancellation or CancellationToken()
        task = await self.load_task(task_id)

        if not self.provider.supports_tool_calling():
            raise ConfigurationError("LLM provider does not support tool calling")

        messages = [
            Message(role="system", content=SYSTEM_PROMPT),
            Message(role="user", content=build_task_prompt(task)),
        ]

        iterations = 0
        tool_calls_count = 0
        tokens_used = 0

        def result(success: bool, **kwargs) -> AgentResult:
            return AgentResult(
                success=success,
                iterations=iterations,
                tool_calls_count=tool_calls_count,
                tokens_used=tokens_used,
                **kwargs,
            )

        logger.info("agent_task_started", task_id=task_id, max_iterations=self.max_iterations)

        try:
            while iterations < self.max_iterations:
                token.raise_if_cancelled()
                iterations += 1

                response = await token.run(self.provider.call_with_tools(messages, AGENT_TOOLS))
                iteration_tokens = response.usage.total_tokens if response.usage else 0
                tokens_used += iteration_tokens

                if not response.tool_calls or response.finish_reason == "stop":
                    await self._report(iterations, iteration_tokens, 0)
                    logger.info(
                        "agent_task_completed",
                        task_id=task_id,
                        iterations=iterations,
                        tool_calls_count=tool_calls_count,
                    )
                    return result(True, final_message=response.content)

                messages.append(Message(role="assistant", content=response.content or ASSISTANT_PLACEHOLDER))

                for call in response.tool_calls:
                    tool_calls_count += 1
                    output = await token.run(self.tools.execute(call.name, call.input))
                    logger.debug(
                        "agent_tool_executed",
                        task_id=task_id,
                        tool=call.name,
                        success=output.success,
                    )
                    messages.append(Message(role="user", content=output.to_message(call.name)))

                await self._report(iterations, iteration_tokens, len(response.tool_calls))

        except ExecutionCancelled as e:
            logger.info("agent_task_cancelled", task_id=task_id, iterations=iterations, reason=e.reason)
            return result(False, error="cancelled")
        except ExecutionOutcomeError as e:
            logger.warning("agent_task_failed", task_id=task_id, iterations=iterations, error=str(e))
            return result(False, error=str(e))

        logger.warning("agent_max_iterations_exceeded", task_id=task_id, max_iterations=self.max_iterations)
        return result(False, error=f"max iterations exceeded ({self.max_iterations})")

    async def _report(self, iteration: int, tokens: int, tool_calls: int) -> None:
        if self.on_iteration is None:
            return
        outcome = self.on_iteration(
            IterationMetrics(iteration=iteration, tokens_used=tokens, tool_calls_count=tool_calls)
        )
        if inspect.isawaitable(outcome):
            await outcome

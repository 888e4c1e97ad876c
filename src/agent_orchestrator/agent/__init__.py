from agent_orchestrator.agent.engine import AgentEngine, AgentResult, IterationMetrics
from agent_orchestrator.agent.tools import AGENT_TOOLS, AgentToolExecutor, ToolOutput

__all__ = [
    "AGENT_TOOLS",
    "AgentEngine",
    "AgentResult",
    "AgentToolExecutor",
    "IterationMetrics",
    "ToolOutput",
]

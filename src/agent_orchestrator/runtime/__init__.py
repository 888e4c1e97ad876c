from agent_orchestrator.runtime.base import (
    ContainerRuntime,
    ContainerSpec,
    ExecResult,
    RuntimeContainerInfo,
    TerminalStream,
)
from agent_orchestrator.runtime.docker_runtime import DockerRuntime

__all__ = [
    "ContainerRuntime",
    "ContainerSpec",
    "DockerRuntime",
    "ExecResult",
    "RuntimeContainerInfo",
    "TerminalStream",
]

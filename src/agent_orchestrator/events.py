"""Typed state-change events and the hub that publishes them."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
import inspect
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter
import redis.asyncio as redis
import structlog

from agent_orchestrator.models import utcnow

logger = structlog.get_logger()


class OrchestratorEvent(BaseModel):
    """Base event for entity state changes."""

    event_type: str
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def entity(self) -> str:
        raise NotImplementedError

    @property
    def entity_id(self) -> str:
        raise NotImplementedError


class WorkerStatusChanged(OrchestratorEvent):
    event_type: Literal["worker_status_changed"] = "worker_status_changed"
    worker_id: str
    old_status: str | None
    new_status: str
    task_id: str | None = None

    @property
    def entity(self) -> str:
        return "worker"

    @property
    def entity_id(self) -> str:
        return self.worker_id


class ContainerStatusChanged(OrchestratorEvent):
    event_type: Literal["container_status_changed"] = "container_status_changed"
    container_id: str
    old_status: str | None
    new_status: str
    workspace_id: str | None = None
    execution_id: str | None = None

    @property
    def entity(self) -> str:
        return "container"

    @property
    def entity_id(self) -> str:
        return self.container_id


class ExecutionStatusChanged(OrchestratorEvent):
    event_type: Literal["execution_status_changed"] = "execution_status_changed"
    execution_id: str
    worker_id: str
    old_status: str | None
    new_status: str
    error: str | None = None

    @property
    def entity(self) -> str:
        return "execution"

    @property
    def entity_id(self) -> str:
        return self.execution_id


class ExecutionMetricsUpdated(OrchestratorEvent):
    event_type: Literal["execution_metrics_updated"] = "execution_metrics_updated"
    execution_id: str
    worker_id: str
    tokens_used: int
    cost_usd: float
    tool_calls_count: int

    @property
    def entity(self) -> str:
        return "execution"

    @property
    def entity_id(self) -> str:
        return self.execution_id


EventUnion = Annotated[
    WorkerStatusChanged | ContainerStatusChanged | ExecutionStatusChanged | ExecutionMetricsUpdated,
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter[EventUnion] = TypeAdapter(EventUnion)


def parse_event(data: dict[str, Any]) -> EventUnion:
    """Parse a raw event payload into a typed schema."""

    return _event_adapter.validate_python(data)


EventHandler = Callable[[OrchestratorEvent], Awaitable[None] | None]


class EventHub:
    """Publishes orchestrator events.

    One instance is constructed per orchestrator lifetime and passed to every
    component that publishes. In-process subscribers are called in order;
    with a Redis client, events also go to PubSub on
    `{prefix}:{entity}:{entity_id}`. Publication never raises.
    """

    def __init__(self, redis_client: redis.Redis | None = None, prefix: str = "orchestrator"):
        self.redis = redis_client
        self.prefix = prefix
        self._subscribers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    def channel_for(self, event: OrchestratorEvent) -> str:
        return f"{self.prefix}:{event.entity}:{event.entity_id}"

    async def publish(self, event: OrchestratorEvent) -> None:
        for handler in list(self._subscribers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=event.event_type,
                    error=str(e),
                )

        if self.redis is None:
            return

        channel = self.channel_for(event)
        try:
            await self.redis.publish(channel, event.model_dump_json())
            logger.debug("event_published", channel=channel, event_type=event.event_type)
        except Exception as e:
            logger.error("event_publish_failed", channel=channel, error=str(e))

"""Provider-neutral LLM types and the shared HTTP plumbing for adapters."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
import json
from typing import Any, Literal, Protocol

import httpx
import structlog

from agent_orchestrator.errors import ProviderError

logger = structlog.get_logger()

FinishReason = Literal["stop", "length", "tool_calls"]
Role = Literal["system", "user", "assistant"]

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"
ERROR_BODY_PREVIEW = 500


@dataclass
class Message:
    role: Role
    content: str


@dataclass
class ChatOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    stop_sequences: list[str] = field(default_factory=list)


@dataclass
class ChatChunk:
    content: str
    finish_reason: FinishReason | None = None


@dataclass
class Tool:
    """Tool definition advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ToolCallResult:
    finish_reason: FinishReason
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None


@dataclass(frozen=True)
class ProviderConfig:
    base_url: str
    model: str
    api_key: str | None = None
    timeout: float = 120.0


class LLMProvider(Protocol):
    def chat(self, messages: list[Message], options: ChatOptions | None = None) -> AsyncIterator[ChatChunk]:
        """Stream a completion. Closing the iterator closes the HTTP response."""
        ...

    async def call_with_tools(self, messages: list[Message], tools: list[Tool]) -> ToolCallResult: ...

    def supports_tool_calling(self) -> bool: ...


class BaseProvider:
    """Shared HTTP request and SSE handling for provider adapters.

    Subclasses set `chat_path`, build request bodies, and override the chunk
    extractors for their backend's stream format.
    """

    name = "base"
    chat_path = "v1/chat/completions"

    def __init__(self, config: ProviderConfig):
        self.config = config

    def get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def get_endpoint(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _error(self, response: httpx.Response, body: str) -> ProviderError:
        logger.error(
            "llm_request_failed",
            provider=self.name,
            status_code=response.status_code,
            body=body[:ERROR_BODY_PREVIEW],
        )
        return ProviderError(
            f"{self.name} API request failed: {response.status_code} {response.reason_phrase} - "
            f"{body[:ERROR_BODY_PREVIEW]}",
            status_code=response.status_code,
            body=body,
        )

    async def stream_request(self, endpoint: str, body: dict[str, Any]) -> AsyncIterator[ChatChunk]:
        """POST and yield chunks parsed from a server-sent event stream."""
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                async with client.stream("POST", endpoint, json=body, headers=self.get_headers()) as response:
                    if response.is_error:
                        error_body = (await response.aread()).decode("utf-8", errors="replace")
                        raise self._error(response, error_body)

                    async for line in response.aiter_lines():
                        chunk = self._parse_sse_line(line)
                        if chunk is not None:
                            yield chunk
        except httpx.HTTPError as e:
            logger.error("llm_stream_failed", provider=self.name, error=str(e))
            raise ProviderError(f"{self.name} stream failed: {e}") from e

    def _parse_sse_line(self, line: str) -> ChatChunk | None:
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        data = line[len(SSE_DATA_PREFIX) :].strip()
        if data == SSE_DONE:
            return None

        try:
            parsed = json.loads(data)
        except ValueError:
            logger.warning("llm_sse_chunk_malformed", provider=self.name, data=data[:ERROR_BODY_PREVIEW])
            return None

        content = self.extract_content(parsed)
        finish_reason = self.extract_finish_reason(parsed)
        if not content and finish_reason is None:
            return None
        return ChatChunk(content=content, finish_reason=finish_reason)

    async def make_request(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                response = await client.post(endpoint, json=body, headers=self.get_headers())
        except httpx.HTTPError as e:
            logger.error("llm_request_transport_failed", provider=self.name, error=str(e))
            raise ProviderError(f"{self.name} request failed: {e}") from e

        if response.is_error:
            raise self._error(response, response.text)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned invalid JSON", status_code=response.status_code, body=response.text
            ) from e

    def extract_content(self, chunk: dict[str, Any]) -> str:
        choices = chunk.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or ""

    def extract_finish_reason(self, chunk: dict[str, Any]) -> FinishReason | None:
        choices = chunk.get("choices") or [{}]
        reason = choices[0].get("finish_reason")
        if not reason:
            return None
        return map_openai_finish_reason(reason)

    def supports_tool_calling(self) -> bool:
        return True


def map_openai_finish_reason(reason: str | None) -> FinishReason:
    if reason in ("stop", "length", "tool_calls"):
        return reason
    return "stop"


def to_wire_messages(messages: list[Message]) -> list[dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in messages]

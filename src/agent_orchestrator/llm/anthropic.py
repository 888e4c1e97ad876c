"""Anthropic messages API adapter."""

from collections.abc import AsyncIterator
from typing import Any

from agent_orchestrator.llm.base import (
    BaseProvider,
    ChatChunk,
    ChatOptions,
    FinishReason,
    Message,
    Tool,
    ToolCall,
    ToolCallResult,
    Usage,
)

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def map_stop_reason(reason: str | None) -> FinishReason:
    return STOP_REASONS.get(reason or "", "stop")


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    chat_path = "v1/messages"

    def get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _base_body(self, messages: list[Message], max_tokens: int) -> dict[str, Any]:
        # System prompt goes in its own field, not in the message list
        system = [m.content for m in messages if m.role == "system"]
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages if m.role != "system"],
            "max_tokens": max_tokens,
        }
        if system:
            body["system"] = "\n\n".join(system)
        return body

    async def chat(
        self, messages: list[Message], options: ChatOptions | None = None
    ) -> AsyncIterator[ChatChunk]:
        options = options or ChatOptions()
        body = self._base_body(messages, options.max_tokens or DEFAULT_MAX_TOKENS)
        body["stream"] = True
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.stop_sequences:
            body["stop_sequences"] = options.stop_sequences

        async for chunk in self.stream_request(self.get_endpoint(self.chat_path), body):
            yield chunk

    def extract_content(self, chunk: dict[str, Any]) -> str:
        if chunk.get("type") == "content_block_delta":
            return (chunk.get("delta") or {}).get("text") or ""
        return ""

    def extract_finish_reason(self, chunk: dict[str, Any]) -> FinishReason | None:
        if chunk.get("type") == "message_delta":
            reason = (chunk.get("delta") or {}).get("stop_reason")
            if reason:
                return map_stop_reason(reason)
        if chunk.get("type") == "message_stop":
            reason = (chunk.get("message") or {}).get("stop_reason")
            if reason:
                return map_stop_reason(reason)
        return None

    async def call_with_tools(self, messages: list[Message], tools: list[Tool]) -> ToolCallResult:
        body = self._base_body(messages, DEFAULT_MAX_TOKENS)
        body["tools"] = [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema} for t in tools
        ]
        data = await self.make_request(self.get_endpoint(self.chat_path), body)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text_parts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.get("id", ""), name=block.get("name", ""), input=block.get("input") or {})
                )

        usage = None
        if data.get("usage"):
            usage = Usage(
                input_tokens=data["usage"].get("input_tokens", 0),
                output_tokens=data["usage"].get("output_tokens", 0),
            )

        return ToolCallResult(
            finish_reason=map_stop_reason(data.get("stop_reason")),
            content="\n".join(text_parts) if text_parts else None,
            tool_calls=tool_calls,
            usage=usage,
        )

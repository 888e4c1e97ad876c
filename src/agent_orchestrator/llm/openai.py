"""OpenAI chat completions adapter."""

from collections.abc import AsyncIterator
import json
from typing import Any

import structlog

from agent_orchestrator.errors import ProviderError
from agent_orchestrator.llm.base import (
    BaseProvider,
    ChatChunk,
    ChatOptions,
    Message,
    Tool,
    ToolCall,
    ToolCallResult,
    Usage,
    map_openai_finish_reason,
    to_wire_messages,
)

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.openai.com"


class OpenAIProvider(BaseProvider):
    name = "openai"
    chat_path = "v1/chat/completions"

    def _chat_body(self, messages: list[Message], options: ChatOptions) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": to_wire_messages(messages),
            "stream": True,
        }
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        if options.stop_sequences:
            body["stop"] = options.stop_sequences
        return body

    async def chat(
        self, messages: list[Message], options: ChatOptions | None = None
    ) -> AsyncIterator[ChatChunk]:
        body = self._chat_body(messages, options or ChatOptions())
        async for chunk in self.stream_request(self.get_endpoint(self.chat_path), body):
            yield chunk

    async def call_with_tools(self, messages: list[Message], tools: list[Tool]) -> ToolCallResult:
        body = {
            "model": self.config.model,
            "messages": to_wire_messages(messages),
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ],
            "tool_choice": "auto",
        }
        data = await self.make_request(self.get_endpoint(self.chat_path), body)

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(f"No choices returned from {self.name} API", body=json.dumps(data))
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [self._parse_tool_call(tc) for tc in message.get("tool_calls") or []]

        usage = None
        if data.get("usage"):
            usage = Usage(
                input_tokens=data["usage"].get("prompt_tokens", 0),
                output_tokens=data["usage"].get("completion_tokens", 0),
            )

        return ToolCallResult(
            finish_reason=map_openai_finish_reason(choice.get("finish_reason")),
            content=message.get("content"),
            tool_calls=tool_calls,
            usage=usage,
        )

    def _parse_tool_call(self, raw: dict[str, Any]) -> ToolCall:
        function = raw.get("function") or {}
        arguments = function.get("arguments") or "{}"
        try:
            parsed = json.loads(arguments)
        except ValueError:
            logger.warning("tool_call_arguments_malformed", provider=self.name, tool=function.get("name"))
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        return ToolCall(id=raw.get("id", ""), name=function.get("name", ""), input=parsed)

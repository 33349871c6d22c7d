import logging
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field


logger = logging.getLogger("fragment_agent.agent.model")


class ToolInvocation(BaseModel):
    """A tool call emitted by the model; `arguments` is the raw JSON string."""

    id: str
    name: str
    arguments: str = "{}"


class ModelResponse(BaseModel):
    text: str | None = None
    tool_calls: list[ToolInvocation] = Field(default_factory=list)


class ModelClient(Protocol):
    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse: ...


class OpenAIChatModel:
    """Chat Completions backed model (OpenAI API or the AI Gateway)."""

    def __init__(self, client: AsyncOpenAI, model: str, temperature: float | None = None) -> None:
        self.client = client
        self.model = model
        self.temperature = temperature

    async def complete(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if tools:
            kwargs["tools"] = tools
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, *messages],
            **kwargs,
        )
        choice = completion.choices[0]
        msg = getattr(choice, "message", None)
        text = getattr(msg, "content", None) if msg else None
        tool_calls = getattr(msg, "tool_calls", None) if msg else None
        calls = [
            ToolInvocation(
                id=call.id,
                name=call.function.name,
                arguments=getattr(call.function, "arguments", None) or "{}",
            )
            for call in tool_calls or []
        ]
        logger.debug(
            "completion model=%s text_len=%d tool_calls=%d",
            self.model,
            len(text or ""),
            len(calls),
        )
        return ModelResponse(text=text, tool_calls=calls)

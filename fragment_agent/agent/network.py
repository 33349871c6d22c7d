import asyncio
import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from fragment_agent.agent.context import AgentState, HistoryMessage, ToolEvent
from fragment_agent.agent.model import ModelClient, ModelResponse
from fragment_agent.agent.router import RouterDecision, on_response, route
from fragment_agent.agent.tools import ToolContext, ToolRegistry
from fragment_agent.ledger import StepLedger
from fragment_agent.sandbox import SandboxClient


logger = logging.getLogger("fragment_agent.agent.network")

DEFAULT_MAX_ITERATIONS = 15


class NetworkStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"


class NetworkResult(BaseModel):
    state: AgentState
    turns: int
    reason: Literal["summary", "max_iterations", "cancelled"]
    events: list[ToolEvent] = Field(default_factory=list)


def build_messages(prompt: str, history: list[HistoryMessage]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [
        {"role": m.role, "content": m.content} for m in history if m.content
    ]
    messages.append({"role": "user", "content": prompt})
    return messages


def assistant_message(response: ModelResponse) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": response.text or ""}
    if response.tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in response.tool_calls
        ]
    return message


class AgentNetwork:
    """Drives one agent through repeated turns until the router stops it.

    Each model turn is a ledgered step, so a replayed run sees the same tool
    calls and reconstructs the same state from the recorded tool steps.
    """

    def __init__(
        self,
        *,
        system: str,
        model: ModelClient,
        tools: ToolRegistry,
        ledger: StepLedger,
        sandbox: SandboxClient,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        name: str = "code-agent-network",
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.name = name
        self.system = system
        self.model = model
        self.tools = tools
        self.ledger = ledger
        self.sandbox = sandbox
        self.max_iterations = max_iterations
        self.status = NetworkStatus.IDLE
        self.turn = 0

    def _system_prompt(self, state: AgentState) -> str:
        return f"{self.system}\n\nCurrent state:\n{state.describe()}"

    async def _invoke_model(
        self, run_id: str, state: AgentState, messages: list[dict[str, Any]]
    ) -> ModelResponse:
        system = self._system_prompt(state)
        # Snapshot the conversation; the list keeps growing after this turn.
        conversation = list(messages)

        async def _complete() -> dict[str, Any]:
            response = await self.model.complete(system, conversation, self.tools.schemas())
            return response.model_dump()

        recorded = await self.ledger.run(run_id, f"agent-turn-{self.turn}", _complete)
        return ModelResponse.model_validate(recorded)

    async def _dispatch(
        self,
        run_id: str,
        handle: str,
        state: AgentState,
        response: ModelResponse,
    ) -> list[str]:
        calls = [
            self.tools.dispatch(
                call,
                ToolContext(
                    run_id=run_id,
                    turn=self.turn,
                    index=i,
                    ledger=self.ledger,
                    sandbox=self.sandbox,
                    handle=handle,
                    state=state,
                ),
            )
            for i, call in enumerate(response.tool_calls)
        ]
        return list(await asyncio.gather(*calls))

    async def run(
        self,
        *,
        run_id: str,
        handle: str,
        prompt: str,
        state: AgentState | None = None,
        history: list[HistoryMessage] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> NetworkResult:
        if state is None:
            state = AgentState()
        messages = build_messages(prompt, history or [])
        events: list[ToolEvent] = []
        self.status = NetworkStatus.RUNNING
        self.turn = 0
        reason: Literal["summary", "max_iterations", "cancelled"] = "max_iterations"

        while True:
            if cancel is not None and cancel.is_set():
                logger.info("network[%s] cancelled after %d turns", run_id, self.turn)
                reason = "cancelled"
                break

            self.turn += 1
            response = await self._invoke_model(run_id, state, messages)
            messages.append(assistant_message(response))

            outputs = await self._dispatch(run_id, handle, state, response)
            for call, output in zip(response.tool_calls, outputs):
                messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
                events.append(
                    ToolEvent(
                        turn=self.turn,
                        tool_id=call.id,
                        name=call.name,
                        arguments=call.arguments,
                        output=output,
                    )
                )

            on_response(state, response.text)
            logger.info(
                "network[%s] turn=%d tool_calls=%d files=%d",
                run_id,
                self.turn,
                len(response.tool_calls),
                len(state.files),
            )

            if route(state) is RouterDecision.STOP:
                reason = "summary"
                break
            if self.turn >= self.max_iterations:
                logger.warning(
                    "network[%s] reached max iterations (%d) without a summary",
                    run_id,
                    self.max_iterations,
                )
                break

        self.status = NetworkStatus.TERMINATED
        return NetworkResult(state=state, turns=self.turn, reason=reason, events=events)

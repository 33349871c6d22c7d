import asyncio
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from fragment_agent.agent.context import AgentState, HistoryMessage
from fragment_agent.agent.model import ModelClient, OpenAIChatModel
from fragment_agent.agent.network import AgentNetwork
from fragment_agent.agent.tools import ToolRegistry, build_tool_registry
from fragment_agent.config import Settings, configure_openai
from fragment_agent.ledger import (
    InMemoryLedgerStore,
    LedgerStore,
    RuntimeCacheLedgerStore,
    SQLiteLedgerStore,
    StepLedger,
)
from fragment_agent.persister import persist_result
from fragment_agent.pipeline import AgentsTextGenerator, TextGenerator, derive_title_and_response
from fragment_agent.prompts import PROMPT
from fragment_agent.run_store import InMemoryRunStore, RunStore, RuntimeCacheRunStore
from fragment_agent.sandbox import SandboxClient


logger = logging.getLogger("fragment_agent.workflow")


class RunRequest(BaseModel):
    """An accepted request to run the code agent once."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1, max_length=10_000)
    history: list[HistoryMessage] = Field(default_factory=list)


class RunResult(BaseModel):
    run_id: str
    status: Literal["success", "error"]
    url: str
    title: str
    files: dict[str, str]
    summary: str


class WorkflowDeps(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    settings: Settings
    ledger: StepLedger
    sandbox: SandboxClient
    model: Any
    text_generator: Any
    store: Any
    tools: ToolRegistry = Field(default_factory=build_tool_registry)


def make_ledger_store(settings: Settings) -> LedgerStore:
    if settings.ledger_backend == "sqlite":
        return SQLiteLedgerStore(settings.ledger_path)
    if settings.ledger_backend == "cache":
        return RuntimeCacheLedgerStore(
            settings.run_store_namespace, settings.run_store_ttl_seconds
        )
    return InMemoryLedgerStore()


def make_run_store(settings: Settings) -> RunStore:
    if settings.ledger_backend == "cache":
        return RuntimeCacheRunStore(settings.run_store_namespace, settings.run_store_ttl_seconds)
    return InMemoryRunStore()


def build_deps(settings: Settings | None = None) -> WorkflowDeps:
    settings = settings or Settings.from_env()
    client = configure_openai()
    return WorkflowDeps(
        settings=settings,
        ledger=StepLedger(make_ledger_store(settings)),
        sandbox=SandboxClient(
            timeout_ms=settings.sandbox_timeout_ms, ports=[settings.preview_port]
        ),
        model=OpenAIChatModel(client, settings.model, settings.temperature),
        text_generator=AgentsTextGenerator(settings.summary_model),
        store=make_run_store(settings),
    )


async def load_previous_messages(
    deps: WorkflowDeps, request: RunRequest
) -> list[HistoryMessage]:
    """Recent conversation in chronological order, bounded to the history limit."""
    limit = deps.settings.history_limit
    if request.history:
        return list(request.history[-limit:])

    store: RunStore = deps.store

    async def _load() -> list[dict[str, str]]:
        recent = await store.recent_messages(request.project_id, limit)
        formatted = [
            {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
            for m in recent
        ]
        formatted.reverse()
        return formatted

    recorded = await deps.ledger.run(request.run_id, "get-previous-messages", _load)
    return [HistoryMessage.model_validate(m) for m in recorded]


async def run_code_agent(
    request: RunRequest,
    deps: WorkflowDeps,
    *,
    cancel: asyncio.Event | None = None,
) -> RunResult:
    """Run the code agent end to end for one request.

    Safe to call again with the same run id: every completed step is replayed
    from the ledger instead of being executed a second time.
    """
    settings = deps.settings
    ledger = deps.ledger
    logger.info(
        "run[%s] start project=%s prompt_len=%d history=%d",
        request.run_id,
        request.project_id,
        len(request.prompt),
        len(request.history),
    )

    async def _acquire() -> str:
        return await deps.sandbox.acquire(settings.sandbox_template)

    handle = await ledger.run(request.run_id, "get-sandbox-id", _acquire)
    try:
        return await _run_in_sandbox(request, deps, handle, cancel)
    finally:
        await deps.sandbox.release(handle)


async def _run_in_sandbox(
    request: RunRequest,
    deps: WorkflowDeps,
    handle: str,
    cancel: asyncio.Event | None,
) -> RunResult:
    settings = deps.settings
    ledger = deps.ledger
    previous = await load_previous_messages(deps, request)

    model: ModelClient = deps.model
    network = AgentNetwork(
        system=PROMPT,
        model=model,
        tools=deps.tools,
        ledger=ledger,
        sandbox=deps.sandbox,
        max_iterations=settings.max_iterations,
    )
    result = await network.run(
        run_id=request.run_id,
        handle=handle,
        prompt=request.prompt,
        state=AgentState(),
        history=previous,
        cancel=cancel,
    )
    state = result.state
    logger.info(
        "run[%s] network terminated reason=%s turns=%d files=%d",
        request.run_id,
        result.reason,
        result.turns,
        len(state.files),
    )

    derived = None
    if state.summary:
        generator: TextGenerator = deps.text_generator
        derived = await derive_title_and_response(generator, state.summary)

    outcome = await persist_result(
        ledger=ledger,
        store=deps.store,
        sandbox=deps.sandbox,
        run_id=request.run_id,
        project_id=request.project_id,
        handle=handle,
        state=state,
        derived=derived,
        preview_port=settings.preview_port,
    )
    artifact = outcome.artifact
    return RunResult(
        run_id=request.run_id,
        status=outcome.status,
        url=artifact.preview_url if artifact else "",
        title=artifact.title if artifact else (derived.title if derived else ""),
        files=state.snapshot(),
        summary=state.summary,
    )

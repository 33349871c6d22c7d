import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from fragment_agent.agent.context import HistoryMessage
from fragment_agent.run_store import StoredMessage
from fragment_agent.workflow import RunRequest, WorkflowDeps, build_deps, run_code_agent


# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("fragment_agent.server")
if not logger.handlers:
    logger.setLevel(logging.INFO)

MAX_TRACKED_FAILURES = 1000

_deps: WorkflowDeps | None = None
_tasks: dict[str, asyncio.Task] = {}
_failures: OrderedDict[str, str] = OrderedDict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # shutdown
    for task in list(_tasks.values()):
        task.cancel()
    if _deps is not None:
        await _deps.sandbox.aclose()
    logger.info("sandbox connections closed")


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_deps() -> WorkflowDeps:
    global _deps
    if _deps is None:
        _deps = build_deps()
    return _deps


def make_run_id() -> str:
    return f"run_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


def record_failure(run_id: str, error: str) -> None:
    _failures[run_id] = error
    _failures.move_to_end(run_id)
    while len(_failures) > MAX_TRACKED_FAILURES:
        _failures.popitem(last=False)


class RunEvent(BaseModel):
    """Inbound run request; delivery may repeat, the run id makes it idempotent."""

    run_id: str | None = None
    project_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1, max_length=10_000)
    history: list[HistoryMessage] = Field(default_factory=list)


class MessageCreate(BaseModel):
    prompt: str = Field(min_length=1, max_length=10_000)


async def _run_in_background(request: RunRequest) -> None:
    try:
        result = await run_code_agent(request, get_deps())
        logger.info("run[%s] finished status=%s", request.run_id, result.status)
    except Exception as e:
        logger.exception("run[%s] failed", request.run_id)
        record_failure(request.run_id, str(e))
    finally:
        _tasks.pop(request.run_id, None)


def schedule_run(request: RunRequest) -> None:
    existing = _tasks.get(request.run_id)
    if existing is not None and not existing.done():
        logger.info("run[%s] already in progress", request.run_id)
        return
    _failures.pop(request.run_id, None)
    _tasks[request.run_id] = asyncio.create_task(_run_in_background(request))


@app.post("/api/runs")
async def create_run(event: RunEvent) -> dict[str, Any]:
    """Accept a run request and start it in the background."""
    request = RunRequest(
        run_id=event.run_id or make_run_id(),
        project_id=event.project_id,
        prompt=event.prompt,
        history=event.history,
    )
    logger.info(
        "create_run[%s] project=%s prompt_len=%d history=%d",
        request.run_id,
        request.project_id,
        len(request.prompt),
        len(request.history),
    )
    schedule_run(request)
    return {"run_id": request.run_id}


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str) -> dict[str, Any]:
    outcome = await get_deps().store.get_outcome(run_id)
    if outcome is not None:
        return outcome.model_dump(mode="json")
    if run_id in _tasks:
        return {"run_id": run_id, "status": "pending"}
    if run_id in _failures:
        return {"run_id": run_id, "status": "failed", "error": _failures[run_id]}
    raise HTTPException(status_code=404, detail="Run not found")


@app.post("/api/projects/{project_id}/messages")
async def create_message(project_id: str, body: MessageCreate) -> dict[str, Any]:
    """Store the user's prompt and trigger a run for it."""
    deps = get_deps()
    await deps.store.append_message(
        StoredMessage(project_id=project_id, role="user", type="result", content=body.prompt)
    )
    request = RunRequest(run_id=make_run_id(), project_id=project_id, prompt=body.prompt)
    schedule_run(request)
    return {"run_id": request.run_id}


@app.get("/api/projects/{project_id}/messages")
async def list_messages(project_id: str, limit: int = 20) -> dict[str, Any]:
    messages = await get_deps().store.recent_messages(project_id, limit)
    return {"messages": [m.model_dump(mode="json") for m in reversed(messages)]}


@app.get("/")
def read_root():
    return {"Hello": "Fragment Agent"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8081)

import logging
from typing import Literal

from fragment_agent.agent.context import AgentState
from fragment_agent.ledger import StepLedger
from fragment_agent.pipeline import PostRunOutput
from fragment_agent.run_store import Artifact, RunOutcome, RunStore
from fragment_agent.sandbox import SandboxClient


logger = logging.getLogger("fragment_agent.persister")

ERROR_CONTENT = "Something went wrong"


def classify(state: AgentState) -> Literal["success", "error"]:
    if not state.summary or not state.files:
        return "error"
    return "success"


async def resolve_preview_url(
    ledger: StepLedger, sandbox: SandboxClient, run_id: str, handle: str, port: int
) -> str:
    async def _resolve() -> str:
        try:
            return await sandbox.resolve_host(handle, port)
        except Exception as e:
            logger.warning("run[%s] preview url unavailable: %s", run_id, e)
            return ""

    return await ledger.run(run_id, "get-sandbox-url", _resolve)


async def persist_result(
    *,
    ledger: StepLedger,
    store: RunStore,
    sandbox: SandboxClient,
    run_id: str,
    project_id: str,
    handle: str,
    state: AgentState,
    derived: PostRunOutput | None,
    preview_port: int,
) -> RunOutcome:
    """Write the single outcome record for a run.

    Errors (no summary or no files) get a fixed message and no artifact. The
    write is a ledgered step, so a retried run never stores a second outcome.
    """
    status = classify(state)
    if status == "error" or derived is None:
        outcome = RunOutcome(
            run_id=run_id, project_id=project_id, status="error", content=ERROR_CONTENT
        )
    else:
        preview_url = await resolve_preview_url(ledger, sandbox, run_id, handle, preview_port)
        outcome = RunOutcome(
            run_id=run_id,
            project_id=project_id,
            status="success",
            content=derived.response,
            artifact=Artifact(
                title=derived.title,
                files=state.snapshot(),
                preview_url=preview_url or "",
            ),
        )

    async def _save() -> dict:
        saved = await store.save_outcome(outcome)
        return saved.model_dump(mode="json")

    recorded = RunOutcome.model_validate(await ledger.run(run_id, "save-result", _save))
    logger.info("run[%s] saved %s outcome", run_id, recorded.status)
    return recorded

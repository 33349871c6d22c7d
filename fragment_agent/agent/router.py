import logging
import re
from enum import Enum

from fragment_agent.agent.context import AgentState


logger = logging.getLogger("fragment_agent.agent.router")

SUMMARY_OPEN = "<task_summary>"

_SUMMARY_RE = re.compile(r"<task_summary>(.*?)</task_summary>", re.DOTALL)


class RouterDecision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


def extract_task_summary(text: str | None) -> str | None:
    """Return the payload of the completion marker in `text`, if any.

    Only a closed, non-empty `<task_summary>` block counts. When the agent
    emits several, the last well-formed one wins.
    """
    if not text or SUMMARY_OPEN not in text:
        return None
    payloads = [m.strip() for m in _SUMMARY_RE.findall(text)]
    payloads = [p for p in payloads if p]
    if not payloads:
        logger.warning("ignoring malformed task summary marker")
        return None
    if len(payloads) > 1:
        logger.warning("found %d task summary markers, using the last one", len(payloads))
    return payloads[-1]


def on_response(state: AgentState, text: str | None) -> AgentState:
    """Record the completion marker from the agent's latest text, if present."""
    summary = extract_task_summary(text)
    if summary:
        state.summary = summary
    return state


def route(state: AgentState) -> RouterDecision:
    return RouterDecision.STOP if state.summary else RouterDecision.CONTINUE

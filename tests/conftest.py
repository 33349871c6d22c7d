"""Shared test fixtures."""

import pytest

from fragment_agent.agent.context import AgentState
from fragment_agent.agent.tools import ToolContext
from fragment_agent.ledger import InMemoryLedgerStore, StepLedger

from helpers import FakeSandboxClient


@pytest.fixture()
def ledger():
    return StepLedger(InMemoryLedgerStore())


@pytest.fixture()
def sandbox():
    return FakeSandboxClient()


@pytest.fixture()
def state():
    return AgentState()


@pytest.fixture()
def make_ctx(ledger, sandbox, state):
    def _make(index: int = 0, turn: int = 1, run_id: str = "run_1") -> ToolContext:
        return ToolContext(
            run_id=run_id,
            turn=turn,
            index=index,
            ledger=ledger,
            sandbox=sandbox,
            handle="sbx_1",
            state=state,
        )

    return _make

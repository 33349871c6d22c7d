import asyncio
import json

import pytest

from fragment_agent.agent.context import AgentState, HistoryMessage
from fragment_agent.agent.model import ModelResponse
from fragment_agent.agent.network import AgentNetwork, build_messages
from fragment_agent.agent.tools import build_tool_registry
from fragment_agent.ledger import InMemoryLedgerStore, StepLedger

from helpers import FakeSandboxClient, ScriptedModel, tool_call


def make_network(model, ledger, sandbox, max_iterations=15):
    return AgentNetwork(
        system="You are a senior software engineer.",
        model=model,
        tools=build_tool_registry(),
        ledger=ledger,
        sandbox=sandbox,
        max_iterations=max_iterations,
    )


def todo_script():
    return [
        ModelResponse(tool_calls=[tool_call("terminal", '{"command": "npm install zod --yes"}')]),
        ModelResponse(
            tool_calls=[
                tool_call(
                    "createOrUpdateFile",
                    json.dumps({"files": [{"path": "app/page.tsx", "content": "export default Todo"}]}),
                )
            ]
        ),
        ModelResponse(text="<task_summary>Built a todo app with add and delete.</task_summary>"),
    ]


def test_build_messages_puts_history_before_prompt():
    history = [
        HistoryMessage(role="user", content="make a counter"),
        HistoryMessage(role="assistant", content="Here is your counter."),
    ]

    messages = build_messages("now make it blue", history)

    assert messages == [
        {"role": "user", "content": "make a counter"},
        {"role": "assistant", "content": "Here is your counter."},
        {"role": "user", "content": "now make it blue"},
    ]


def test_max_iterations_must_be_positive(ledger, sandbox):
    with pytest.raises(ValueError):
        make_network(ScriptedModel([]), ledger, sandbox, max_iterations=0)


@pytest.mark.asyncio
async def test_network_stops_on_task_summary(ledger, sandbox):
    model = ScriptedModel(todo_script())
    network = make_network(model, ledger, sandbox)

    result = await network.run(run_id="run_1", handle="sbx_1", prompt="Build a todo app")

    assert result.reason == "summary"
    assert result.turns == 3
    assert len(model.calls) == 3
    assert result.state.summary == "Built a todo app with add and delete."
    assert result.state.files == {"app/page.tsx": "export default Todo"}
    assert sandbox.commands == ["npm install zod --yes"]
    assert [e.name for e in result.events] == ["terminal", "createOrUpdateFile"]


@pytest.mark.asyncio
async def test_tool_results_are_fed_back_to_the_model(ledger, sandbox):
    model = ScriptedModel(todo_script())
    network = make_network(model, ledger, sandbox)

    await network.run(run_id="run_1", handle="sbx_1", prompt="Build a todo app")

    second_turn = model.calls[1]["messages"]
    assert second_turn[0] == {"role": "user", "content": "Build a todo app"}
    assert second_turn[1]["tool_calls"][0]["function"]["name"] == "terminal"
    assert second_turn[2]["role"] == "tool"
    assert second_turn[2]["content"] == "ran npm install zod --yes\n"
    assert "app/page.tsx" in model.calls[2]["system"]


@pytest.mark.asyncio
async def test_network_stops_at_iteration_cap(ledger, sandbox):
    model = ScriptedModel([])
    network = make_network(model, ledger, sandbox)

    result = await network.run(run_id="run_1", handle="sbx_1", prompt="Build a todo app")

    assert result.reason == "max_iterations"
    assert result.turns == 15
    assert len(model.calls) == 15
    assert result.state.summary == ""


@pytest.mark.asyncio
async def test_replayed_run_does_not_call_model_or_tools_again():
    ledger = StepLedger(InMemoryLedgerStore())
    sandbox = FakeSandboxClient()
    first_model = ScriptedModel(todo_script())
    await make_network(first_model, ledger, sandbox).run(
        run_id="run_1", handle="sbx_1", prompt="Build a todo app"
    )

    replay_model = ScriptedModel([])
    replay = await make_network(replay_model, ledger, sandbox).run(
        run_id="run_1", handle="sbx_1", prompt="Build a todo app", state=AgentState()
    )

    assert replay_model.calls == []
    assert sandbox.commands == ["npm install zod --yes"]
    assert sandbox.writes == ["app/page.tsx"]
    assert replay.state.files == {"app/page.tsx": "export default Todo"}
    assert replay.state.summary == "Built a todo app with add and delete."


@pytest.mark.asyncio
async def test_cancelled_network_stops_before_next_turn(ledger, sandbox):
    cancel = asyncio.Event()

    def script(turn):
        cancel.set()
        return ModelResponse(text="working")

    model = ScriptedModel(script)
    result = await make_network(model, ledger, sandbox).run(
        run_id="run_1", handle="sbx_1", prompt="Build a todo app", cancel=cancel
    )

    assert result.reason == "cancelled"
    assert result.turns == 1
    assert len(model.calls) == 1

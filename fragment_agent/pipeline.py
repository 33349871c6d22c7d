import asyncio
import logging
from typing import Any, Protocol

from agents import Agent, Runner
from pydantic import BaseModel

from fragment_agent.prompts import FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT


logger = logging.getLogger("fragment_agent.pipeline")

DEFAULT_TITLE = "Fragment"
DEFAULT_RESPONSE = "Fragment"


class TextGenerator(Protocol):
    async def generate(self, name: str, instructions: str, input: str) -> Any:
        """Run one stateless, single-turn generation and return its raw output."""
        ...


class AgentsTextGenerator:
    """Single-shot generation through the OpenAI Agents SDK."""

    def __init__(self, model: str | None = None) -> None:
        self.model = model

    def create_agent(self, name: str, instructions: str) -> Agent:
        if self.model:
            return Agent(name=name, instructions=instructions, model=self.model)
        return Agent(name=name, instructions=instructions)

    async def generate(self, name: str, instructions: str, input: str) -> Any:
        result = await Runner.run(self.create_agent(name, instructions), input=input, max_turns=1)
        return result.final_output


class PostRunOutput(BaseModel):
    title: str
    response: str


def plain_text(output: Any, default: str) -> str:
    """Coerce a generator output to text, falling back to `default`."""
    if isinstance(output, list) and all(isinstance(part, str) for part in output):
        output = "".join(output)
    if not isinstance(output, str) or not output.strip():
        return default
    return output.strip()


async def _derive(
    generator: TextGenerator, name: str, instructions: str, summary: str, default: str
) -> str:
    try:
        output = await generator.generate(name, instructions, summary)
    except Exception:
        logger.exception("%s failed, using default", name)
        return default
    return plain_text(output, default)


async def derive_title_and_response(generator: TextGenerator, summary: str) -> PostRunOutput:
    """Derive the fragment title and the user-facing reply from a task summary.

    The two generations are independent and run concurrently; a failure in
    either substitutes its default instead of failing the run.
    """
    title, response = await asyncio.gather(
        _derive(generator, "fragment-title-generator", FRAGMENT_TITLE_PROMPT, summary, DEFAULT_TITLE),
        _derive(generator, "response-generator", RESPONSE_PROMPT, summary, DEFAULT_RESPONSE),
    )
    return PostRunOutput(title=title, response=response)

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fragment_agent.agent.context import AgentState
from fragment_agent.agent.model import ToolInvocation
from fragment_agent.ledger import StepLedger
from fragment_agent.sandbox import SandboxClient


logger = logging.getLogger("fragment_agent.agent.tools")


class ToolContext(BaseModel):
    """Everything a tool handler may touch, passed explicitly per call.

    Attributes:
        run_id: Ledger scope of the current run.
        turn: Agent turn that emitted the call (1-based).
        index: Position of the call within the turn.
        ledger: Step ledger used to make side effects replay-safe.
        sandbox: Client for the run's sandbox.
        handle: Sandbox id bound to the run.
        state: Shared agent state for the run.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    turn: int
    index: int
    ledger: StepLedger
    sandbox: SandboxClient
    handle: str
    state: AgentState

    def step_name(self, base: str) -> str:
        return f"{base}:turn-{self.turn}:{self.index}"


class TerminalArgs(BaseModel):
    command: str


class FileWrite(BaseModel):
    path: str
    content: str


class CreateOrUpdateFileArgs(BaseModel):
    files: list[FileWrite]


class ReadFilesArgs(BaseModel):
    files: list[str] = Field(description="Absolute paths of the files to read")


Handler = Callable[[Any, ToolContext], Awaitable[str]]


class Tool:
    def __init__(
        self,
        name: str,
        description: str,
        parameters: type[BaseModel],
        handler: Handler,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = parameters
        self.handler = handler

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.model_json_schema(),
            },
        }


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [t.schema() for t in self._tools.values()]

    async def dispatch(self, invocation: ToolInvocation, ctx: ToolContext) -> str:
        """Validate and run one tool call, returning the text fed back to the agent.

        Unknown tools and malformed arguments are reported as tool errors
        without reaching the handler.
        """
        tool = self._tools.get(invocation.name)
        if tool is None:
            logger.warning("run[%s] unknown tool %s", ctx.run_id, invocation.name)
            return f"Unknown tool: {invocation.name}. Available tools: {', '.join(self._tools)}"
        try:
            args = tool.parameters.model_validate_json(invocation.arguments or "{}")
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            )
            logger.info("run[%s] rejected %s call: %s", ctx.run_id, tool.name, problems)
            return f"Invalid arguments for {tool.name}: {problems}"
        return await tool.handler(args, ctx)


def _command_failed(error: Any, stdout: str, stderr: str) -> str:
    return f"Command failed: {error} \nstdout: {stdout} \nstderr: {stderr}"


async def terminal(args: TerminalArgs, ctx: ToolContext) -> str:
    async def _run() -> str:
        try:
            result = await ctx.sandbox.run_command(ctx.handle, args.command)
        except Exception as e:
            message = _command_failed(e, "", "")
            logger.error("run[%s] %s", ctx.run_id, message)
            return message
        if result.error is not None:
            message = _command_failed(result.error, result.stdout, result.stderr)
        elif result.exit_code not in (0, None):
            message = _command_failed(
                f"exit status {result.exit_code}", result.stdout, result.stderr
            )
        else:
            return result.stdout
        logger.error("run[%s] %s", ctx.run_id, message)
        return message

    return await ctx.ledger.run(ctx.run_id, ctx.step_name("terminal"), _run)


async def create_or_update_files(args: CreateOrUpdateFileArgs, ctx: ToolContext) -> str:
    async def _write() -> dict[str, Any] | str:
        written: dict[str, str] = {}
        stamps: dict[str, int] = {}
        try:
            for file in args.files:
                await ctx.sandbox.write_file(ctx.handle, file.path, file.content)
                written[file.path] = file.content
                stamps[file.path] = ctx.state.write_stamp()
        except Exception as e:
            logger.error("run[%s] failed to create or update files: %s", ctx.run_id, e)
            return f"Failed to create or update files: {e}"
        return {"files": written, "stamps": stamps}

    result = await ctx.ledger.run(ctx.run_id, ctx.step_name("create-or-update-files"), _write)
    if isinstance(result, dict):
        files = result.get("files") or {}
        ctx.state.merge_files(files, result.get("stamps"))
        return "Created or updated files: " + ", ".join(files) if files else "No files written."
    return result


async def read_files(args: ReadFilesArgs, ctx: ToolContext) -> str:
    async def _read() -> str:
        contents: list[dict[str, str]] = []
        try:
            for path in args.files:
                content = await ctx.sandbox.read_file(ctx.handle, path)
                contents.append({"path": path, "content": content})
        except Exception as e:
            logger.error("run[%s] failed to read files: %s", ctx.run_id, e)
            return f"Failed to read files: {e}"
        return json.dumps(contents)

    return await ctx.ledger.run(ctx.run_id, ctx.step_name("read-files"), _read)


def build_tool_registry() -> ToolRegistry:
    return ToolRegistry(
        [
            Tool(
                name="terminal",
                description="Run commands in the terminal",
                parameters=TerminalArgs,
                handler=terminal,
            ),
            Tool(
                name="createOrUpdateFile",
                description="Create or update files in the sandbox",
                parameters=CreateOrUpdateFileArgs,
                handler=create_or_update_files,
            ),
            Tool(
                name="readFiles",
                description="Read files from the sandbox",
                parameters=ReadFilesArgs,
                handler=read_files,
            ),
        ]
    )

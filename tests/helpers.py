import asyncio
import posixpath
from types import SimpleNamespace
from typing import Any, Callable

from fragment_agent.agent.model import ModelResponse, ToolInvocation
from fragment_agent.errors import NotFoundError, NotReadyError, WriteError
from fragment_agent.sandbox import CommandResult, SandboxClient


CWD = "/vercel/sandbox"


class FakeCommand:
    def __init__(self, lines: list[tuple[str, str]], exit_code: int = 0, fail_after: Exception | None = None):
        self.lines = lines
        self.exit_code = exit_code
        self.fail_after = fail_after

    async def logs(self):
        for stream, data in self.lines:
            yield SimpleNamespace(stream=stream, data=data)
        if self.fail_after is not None:
            raise self.fail_after

    async def wait(self):
        return SimpleNamespace(exit_code=self.exit_code)


class FakeVercelSandbox:
    """Stands in for vercel.sandbox.AsyncSandbox in client tests."""

    def __init__(self, sandbox_id: str = "sbx_1", ports: list[int] | None = None):
        self.sandbox_id = sandbox_id
        self.sandbox = SimpleNamespace(cwd=CWD)
        self.ports = ports or []
        self.files: dict[str, bytes] = {}
        self.next_command = FakeCommand([("stdout", "ok\n")])
        self.commands: list[list[str]] = []
        self.write_error: Exception | None = None
        self.client = SimpleNamespace(aclose=self._aclose)
        self.closed = False

    async def _aclose(self):
        self.closed = True

    async def run_command_detached(self, cmd, args=None, **kwargs):
        self.commands.append([cmd, *(args or [])])
        return self.next_command

    async def write_files(self, files):
        if self.write_error is not None:
            raise self.write_error
        for f in files:
            self.files[posixpath.join(CWD, f["path"])] = f["content"]

    async def read_file(self, path, cwd=None):
        return self.files.get(path)

    def domain(self, port):
        if port not in self.ports:
            raise ValueError(f"No route for port {port}")
        return f"https://{self.sandbox_id}-{port}.vercel.run"


class FakeSandboxClient(SandboxClient):
    """In-memory sandbox used by tool, network and workflow tests."""

    def __init__(self):
        super().__init__()
        self.files: dict[str, str] = {}
        self.acquired: list[str | None] = []
        self.commands: list[str] = []
        self.command_results: dict[str, CommandResult | Exception] = {}
        self.writes: list[str] = []
        self.write_delays: dict[str, float] = {}
        self.fail_writes: set[str] = set()
        self.preview_url: str | None = "https://sbx-3000.vercel.run"
        self.provision_error: Exception | None = None
        self.released: list[str] = []
        self.closed = False

    def _abs(self, path: str) -> str:
        return path if path.startswith("/") else posixpath.join(CWD, path)

    async def acquire(self, template):
        if self.provision_error is not None:
            raise self.provision_error
        self.acquired.append(template)
        return f"sbx_{len(self.acquired)}"

    async def run_command(self, handle, command):
        self.commands.append(command)
        result = self.command_results.get(command, CommandResult(stdout=f"ran {command}\n", exit_code=0))
        if isinstance(result, Exception):
            raise result
        return result

    async def write_file(self, handle, path, content):
        delay = self.write_delays.get(path)
        if delay:
            await asyncio.sleep(delay)
        if path in self.fail_writes:
            raise WriteError(f"Could not write {path}: disk full")
        self.writes.append(path)
        self.files[self._abs(path)] = content

    async def read_file(self, handle, path):
        if path not in self.files:
            raise NotFoundError(f"File not found: {path}")
        return self.files[path]

    async def resolve_host(self, handle, port):
        if self.preview_url is None:
            raise NotReadyError(f"Port {port} is not exposed")
        return self.preview_url

    async def release(self, handle):
        self.released.append(handle)
        await super().release(handle)

    async def aclose(self):
        self.closed = True
        await super().aclose()


def tool_call(name: str, arguments: str, call_id: str = "call_1") -> ToolInvocation:
    return ToolInvocation(id=call_id, name=name, arguments=arguments)


class ScriptedModel:
    """Model stub returning responses from a script, one per turn."""

    def __init__(self, script: list[ModelResponse] | Callable[[int], ModelResponse]):
        self.script = script
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system, messages, tools):
        self.calls.append({"system": system, "messages": list(messages), "tools": tools})
        turn = len(self.calls)
        if callable(self.script):
            return self.script(turn)
        if turn <= len(self.script):
            return self.script[turn - 1]
        return ModelResponse(text="still working")


class FakeTextGenerator:
    def __init__(self, outputs: dict[str, Any] | None = None):
        self.outputs = outputs or {
            "fragment-title-generator": "Todo App",
            "response-generator": "I built a todo app for you.",
        }
        self.calls: list[tuple[str, str]] = []

    async def generate(self, name, instructions, input):
        self.calls.append((name, input))
        output = self.outputs.get(name)
        if isinstance(output, Exception):
            raise output
        return output


class FakeRuntimeCache:
    """Stands in for vercel.cache.AsyncRuntimeCache; every call yields to the loop."""

    def __init__(self, namespace: str | None = None):
        self.namespace = namespace
        self.values: dict[str, Any] = {}
        self.options: dict[str, Any] = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.values.get(key)

    async def set(self, key, value, options=None):
        await asyncio.sleep(0)
        self.values[key] = value
        self.options[key] = options

    async def delete(self, key):
        await asyncio.sleep(0)
        self.values.pop(key, None)

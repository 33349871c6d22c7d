import asyncio
import logging
import posixpath

from pydantic import BaseModel
from vercel.sandbox import AsyncSandbox as Sandbox

from fragment_agent.errors import (
    NotFoundError,
    NotReadyError,
    ProvisionError,
    SandboxError,
    WriteError,
)


logger = logging.getLogger("fragment_agent.sandbox")


class CommandResult(BaseModel):
    """Captured output of one sandbox command.

    `error` is set when the transport failed mid-stream; the buffers still hold
    whatever was received before the failure.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0


class SandboxClient:
    """Protocol client for per-run Vercel sandboxes.

    Connections are cached by sandbox id and re-fetched with `Sandbox.get` when
    missing or after a transport failure. One lock per sandbox serializes
    transport use so concurrent tool calls never interleave streamed output.
    """

    def __init__(self, *, timeout_ms: int = 600_000, ports: list[int] | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.ports = list(ports or [])
        self._cache: dict[str, Sandbox] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, handle: str) -> asyncio.Lock:
        lock = self._locks.get(handle)
        if lock is None:
            lock = self._locks[handle] = asyncio.Lock()
        return lock

    def _mark_stale(self, handle: str) -> None:
        self._cache.pop(handle, None)

    async def acquire(self, template: str | None) -> str:
        try:
            sandbox = await Sandbox.create(
                timeout=self.timeout_ms,
                runtime=template,
                ports=self.ports or None,
            )
        except Exception as e:
            raise ProvisionError(f"Could not create sandbox ({template}): {e}") from e
        self._cache[sandbox.sandbox_id] = sandbox
        logger.info("acquired sandbox %s runtime=%s", sandbox.sandbox_id, template)
        return sandbox.sandbox_id

    async def get_sandbox(self, handle: str) -> Sandbox:
        if handle in self._cache:
            return self._cache[handle]
        fetched = await Sandbox.get(sandbox_id=handle)
        self._cache[handle] = fetched
        return fetched

    async def run_command(self, handle: str, command: str) -> CommandResult:
        buffers = {"stdout": "", "stderr": ""}
        async with self._lock(handle):
            try:
                sandbox = await self.get_sandbox(handle)
                cmd = await sandbox.run_command_detached(
                    "bash", ["-lc", f"cd {sandbox.sandbox.cwd} && {command}"]
                )
                async for line in cmd.logs():
                    stream = "stderr" if getattr(line, "stream", "stdout") == "stderr" else "stdout"
                    buffers[stream] += line.data or ""
                done = await cmd.wait()
            except Exception as e:
                self._mark_stale(handle)
                logger.warning("run_command[%s] transport error: %s", handle, e)
                return CommandResult(
                    stdout=buffers["stdout"], stderr=buffers["stderr"], error=str(e)
                )
        return CommandResult(
            stdout=buffers["stdout"],
            stderr=buffers["stderr"],
            exit_code=getattr(done, "exit_code", None),
        )

    def _relative_path(self, cwd: str, path: str) -> str:
        """Resolve `path` against the sandbox cwd, refusing anything outside it."""
        base = posixpath.normpath(cwd)
        target = posixpath.normpath(path if path.startswith("/") else posixpath.join(base, path))
        if target == base or not target.startswith(base + "/"):
            raise WriteError(f"Path is outside the working directory {base}: {path}")
        return target[len(base) + 1 :]

    async def write_file(self, handle: str, path: str, content: str) -> None:
        async with self._lock(handle):
            try:
                sandbox = await self.get_sandbox(handle)
            except Exception as e:
                raise WriteError(f"Sandbox {handle} unavailable: {e}") from e
            rel = self._relative_path(sandbox.sandbox.cwd, path)
            try:
                await sandbox.write_files([{"path": rel, "content": content.encode("utf-8")}])
            except Exception as e:
                self._mark_stale(handle)
                raise WriteError(f"Could not write {path}: {e}") from e

    async def read_file(self, handle: str, path: str) -> str:
        async with self._lock(handle):
            try:
                sandbox = await self.get_sandbox(handle)
                data = await sandbox.read_file(path)
            except Exception as e:
                self._mark_stale(handle)
                raise SandboxError(f"Could not read {path}: {e}") from e
        if data is None:
            raise NotFoundError(f"File not found: {path}")
        return data.decode("utf-8", errors="replace")

    async def resolve_host(self, handle: str, port: int) -> str:
        try:
            sandbox = await self.get_sandbox(handle)
            url = sandbox.domain(port)
        except Exception as e:
            raise NotReadyError(f"Port {port} is not exposed by sandbox {handle}: {e}") from e
        if not url.startswith(("http://", "https://")):
            url = f"https://{url}"
        return url

    async def _close(self, handle: str, sandbox: Sandbox) -> None:
        try:
            await sandbox.client.aclose()
        except Exception:
            logger.debug("close failed for sandbox %s", handle, exc_info=True)

    async def release(self, handle: str) -> None:
        """Drop the cached connection and lock for a handle whose run is over.

        The sandbox itself keeps running until its timeout so the preview
        stays reachable; a later call re-fetches the connection on demand.
        """
        sandbox = self._cache.pop(handle, None)
        lock = self._locks.get(handle)
        if lock is not None and not lock.locked():
            self._locks.pop(handle, None)
        if sandbox is not None:
            await self._close(handle, sandbox)

    async def aclose(self) -> None:
        for sid, sandbox in list(self._cache.items()):
            await self._close(sid, sandbox)
        self._cache.clear()
        self._locks.clear()

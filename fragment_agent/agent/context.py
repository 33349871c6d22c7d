import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class HistoryMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class AgentState(BaseModel):
    """State shared by the agent and its tools for one run.

    Attributes:
        summary: Payload of the completion marker; empty until the agent finishes.
        files: Mapping of sandbox-relative file paths to contents, in write order.

    Every sandbox write is stamped when it completes. A merge only replaces a
    path's content with a later stamp, so concurrent writes to one path end
    up in the order the sandbox saw them, whatever order their steps finish in.
    """

    summary: str = ""
    files: dict[str, str] = Field(default_factory=dict)

    _last_stamp: int = PrivateAttr(default=0)
    _path_stamps: dict[str, int] = PrivateAttr(default_factory=dict)

    def write_stamp(self) -> int:
        """Monotonic stamp for a write that just completed in the sandbox."""
        stamp = max(time.time_ns(), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    def merge_files(self, updates: dict[str, str], stamps: dict[str, int] | None = None) -> None:
        """Apply written files, keeping the latest-stamped content per path."""
        for path, content in updates.items():
            stamp = (stamps or {}).get(path)
            if stamp is None:
                stamp = self.write_stamp()
            # Recorded stamps from a replay move the clock forward too.
            self._last_stamp = max(self._last_stamp, stamp)
            if stamp < self._path_stamps.get(path, -1):
                continue
            self._path_stamps[path] = stamp
            self.files[path] = content

    def snapshot(self) -> dict[str, str]:
        return dict(self.files)

    def describe(self) -> str:
        if not self.files:
            return "No files have been created or updated yet."
        listing = "\n".join(f"- {p}" for p in self.files)
        return f"Files created or updated so far:\n{listing}"


class ToolEvent(BaseModel):
    turn: int
    tool_id: str
    name: str
    arguments: str
    output: str

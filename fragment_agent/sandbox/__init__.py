from fragment_agent.sandbox.client import CommandResult, SandboxClient

__all__ = ["CommandResult", "SandboxClient"]

class FragmentAgentError(Exception):
    """Base class for failures raised by the fragment agent core."""


class SandboxError(FragmentAgentError):
    pass


class ProvisionError(SandboxError):
    """The sandbox provider could not create an environment (quota, timeout)."""


class WriteError(SandboxError):
    """A file write was rejected or failed in transport."""


class NotFoundError(SandboxError):
    """The requested file does not exist in the sandbox."""


class NotReadyError(SandboxError):
    """The sandbox has not exposed the requested port."""


class LedgerError(FragmentAgentError):
    """A step outcome could not be read from or written to the ledger store."""


class StepFailedError(FragmentAgentError):
    """Raised on replay of a step whose first execution failed.

    Carries the recorded exception type name and message.
    """

    def __init__(self, step_name: str, error_type: str, message: str) -> None:
        super().__init__(f"Step '{step_name}' failed with {error_type}: {message}")
        self.step_name = step_name
        self.error_type = error_type
        self.message = message


class StorageError(FragmentAgentError):
    """The outcome or message store rejected a read or write."""

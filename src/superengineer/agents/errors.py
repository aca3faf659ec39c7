"""Exceptions raised by the agent core.

Only caller-contract violations are raised. Stream and lifecycle problems are
logged or reported through agent events instead.
"""


class SuperengineerError(Exception):
    """Base class for all superengineer errors."""


class AgentNotRunningError(SuperengineerError):
    """Input was sent to an agent that has no running subprocess."""


class AgentAlreadyRunningError(SuperengineerError):
    """``start()`` was called on an agent that is already running."""


class ProcessAlreadyRunningError(SuperengineerError):
    """A ProcessManager was asked to spawn while it still owns a process."""


class ProcessSpawnError(SuperengineerError):
    """The OS did not hand back a usable process."""

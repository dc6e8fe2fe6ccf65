"""
errors.py

Exception taxonomy for the payload controller. Launch and runtime-exit
errors are retried by the controller, link errors degrade to a worst-case
sample, config errors abort startup.
"""


class ArowssError(Exception):
    """Base class for all controller errors."""


class ConfigError(ArowssError):
    """Invalid or missing base configuration."""


class LaunchError(ArowssError):
    """
    A pipeline process failed to spawn or died before it was considered alive.

    Args:
        message (str): Human readable reason.
        stderr_tail (list[str]): Last stderr lines collected from the tools.
    """

    def __init__(self, message: str, stderr_tail: list[str] | None = None):
        super().__init__(message)
        self.stderr_tail = list(stderr_tail or [])

    def __str__(self):
        base = super().__str__()
        if self.stderr_tail:
            return f"{base} (stderr: {self.stderr_tail[-1]})"
        return base


class RuntimeExitError(ArowssError):
    """
    A pipeline process exited while it was expected to be running.

    Args:
        message (str): Human readable reason.
        returncodes (dict[str, int | None]): Exit code per role ("capture", "encoder").
        stderr_tail (list[str]): Last stderr lines collected from the tools.
    """

    def __init__(
        self,
        message: str,
        returncodes: dict[str, int | None] | None = None,
        stderr_tail: list[str] | None = None,
    ):
        super().__init__(message)
        self.returncodes = dict(returncodes or {})
        self.stderr_tail = list(stderr_tail or [])


class LinkSampleError(ArowssError):
    """A link quality sample could not be taken."""

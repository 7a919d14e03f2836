class QueryGateError(Exception):
    """Base class for errors raised by the skill."""


class SkillClosedError(QueryGateError, RuntimeError):
    """The skill was shut down; the only error `execute` lets escape."""

    def __init__(self, message: str = "skill is closed"):
        super().__init__(message)


class ExecutionError(QueryGateError):
    """Backend failure, worker crash or timeout while running a template."""

"""Exception types raised by cadence."""


class CadenceError(Exception):
    """Base class for all cadence errors."""


class ConfigError(CadenceError):
    """Scheduler settings are malformed.

    Raised at load time and never coerced into something valid.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class InvalidCronError(ConfigError):
    """A cron expression could not be parsed."""


class JobNotFoundError(CadenceError):
    """A background job id does not exist in the ledger."""


class JobAlreadyRunningError(CadenceError):
    """A live background job already exists for the session."""

    def __init__(self, job: dict):
        super().__init__(
            f"Background job #{job['id']} is still running (PID {job.get('pid')})"
        )
        self.job = job


class AgentInvocationError(CadenceError):
    """The external agent invocation service failed."""

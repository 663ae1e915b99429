"""Error taxonomy for workload runs.

Configuration errors are raised before any network activity. `TransportError` and
`ResponseCheckError` surface during dispatch/collection.
"""


class WorkloadError(Exception):
    """Base class for every error the CLI reports as a fatal condition."""


class ConfigError(WorkloadError):
    pass


class NotADirectory(ConfigError):
    pass


class MalformedRecord(ConfigError):
    pass


class InsufficientAccounts(ConfigError):
    pass


class TransportError(WorkloadError):
    """The remote call could not be completed or its reply could not be interpreted."""

    def __init__(self, message: str, *, method: str | None = None):
        super().__init__(message)
        self.method = method


class ResponseCheckError(WorkloadError):
    """A response violated the expected completion level or execution status under `assert` severity."""

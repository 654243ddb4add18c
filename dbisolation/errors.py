class IsolationError(Exception):
    """Base class for every error raised by a scenario run."""


class ConfigurationError(IsolationError):
    ...


class UnsupportedIsolationError(IsolationError):

    def __init__(self, backend, level):
        super().__init__(f"Isolation level {level.value} is not supported on {backend.value}.")
        self.backend = backend
        self.level = level


class SerializationFailureError(IsolationError):
    """The backend aborted a transaction because of a detected conflict."""


class LockTimeoutError(SerializationFailureError):
    ...


class SessionKilledError(IsolationError):
    """The session behind a transaction was terminated by the deadlock breaker."""


class InvalidStateError(IsolationError):
    """An operation was attempted on a transaction that is no longer open."""

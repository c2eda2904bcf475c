"""
Error taxonomy for the relay.

Network-transient failures and end-of-input exits are classifications
(see ErrorCategory and ActionKind), not exceptions. Only conditions that
stop a component from doing its job are raised.
"""


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigError(RelayError, ValueError):
    """Required source/endpoint configuration is missing or invalid. Fatal, never retried."""


class SpawnError(RelayError):
    """The external binary could not be launched. Handled by the restart policy."""

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"{name}: failed to spawn process: {cause}")


class CacheInitError(RelayError):
    """Unrecoverable filesystem problem while preparing the segment cache."""


class MaxAttemptsExceeded(RelayError):
    """Restart policy gave up. The component stays FAILED until started again."""

    def __init__(self, name: str, max_attempts: int, last_exit_code=None):
        self.name = name
        self.max_attempts = max_attempts
        self.last_exit_code = last_exit_code
        super().__init__(
            f"{name}: maximum restart attempts ({max_attempts}) reached "
            f"(last exit code: {last_exit_code})"
        )

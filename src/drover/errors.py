"""Error taxonomy shared by every Drover component."""

from __future__ import annotations


class DroverError(RuntimeError):
    """Base class for Drover errors.

    ``hint`` is one concrete next step the CLI prints under the message.
    """

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class NotFoundError(DroverError):
    """Raised when a target, worker, batch or task does not exist."""


class DeadReferenceError(DroverError):
    """Raised when a worker record exists but every pane fallback failed."""

    def __init__(self, message: str, *, worker_id: str, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.worker_id = worker_id


class PollTimeoutError(DroverError):
    """Raised by callers that want a polling deadline to be fatal."""


class ConfigError(DroverError):
    """Raised when a configuration document is malformed."""


class TrustConfigError(ConfigError):
    """Raised when one or more auto-approve trust layers cannot be parsed."""


class ConflictError(DroverError):
    """Raised when registering a worker id that is already taken."""


class BackendError(DroverError):
    """Raised when a terminal backend call fails."""


class RegistryError(DroverError):
    """Raised when a persisted store exists but cannot be decoded."""


class TrackerError(DroverError):
    """Raised when the external task tracker command fails."""


__all__ = [
    "BackendError",
    "ConfigError",
    "ConflictError",
    "DeadReferenceError",
    "DroverError",
    "NotFoundError",
    "PollTimeoutError",
    "RegistryError",
    "TrackerError",
    "TrustConfigError",
]

"""Typed errors surfaced by the cost meter core."""


class MeterError(Exception):
    """Base class for all cost meter errors."""


class NoSessionError(MeterError):
    """Not running inside a valid session context."""


class ConfigMissingError(MeterError):
    """Required configuration (store location, credentials) is absent."""


class ConnectivityError(MeterError):
    """The snapshot subscription failed or dropped. Not retried."""


class ValidationError(MeterError):
    """Bad input for a command. Raised before any store call."""


class WriteRejectedError(MeterError):
    """A merge or replace write was rejected by the store."""


class InvalidTransitionError(MeterError):
    """A timer action is not valid from the current state."""


class NotReadyError(MeterError):
    """A command was issued before the first snapshot arrived."""


class StoreError(MeterError):
    """Raised by store implementations; translated by the core."""

    def __init__(self, message: str, code: str = "unavailable"):
        super().__init__(message)
        self.code = code

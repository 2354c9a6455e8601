"""Define the error taxonomy shared by the loop controller and the notifiers."""

from __future__ import annotations


class RalphError(Exception):
    """Base class for all errors raised by portable_ralph."""


class ConfigError(RalphError):
    """Malformed or missing required settings; fatal before any channel work."""


class ValidationError(RalphError):
    """A URL, email, path, or numeric input was rejected."""


class LockContentionError(RalphError):
    """Another live process owns the lock for this plan."""

    def __init__(self, message: str, *, owner_pid: int | None = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class DeliveryError(RalphError):
    """A single channel failed to deliver an event."""


class TransientDeliveryError(DeliveryError):
    """Delivery failed for a reason that may clear up on retry."""


class FatalDeliveryError(DeliveryError):
    """Delivery failed for a reason a retry cannot fix (bad credentials, bad destination)."""


class ScriptTimeoutError(TransientDeliveryError, TimeoutError):
    """An external notification script exceeded its time bound and was killed."""

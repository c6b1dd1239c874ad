"""
Error taxonomy for the escalation core.

Only ``InputError`` is meant to reach a caller before any work starts.
``LookupFailure`` and ``ChannelFailure`` are raised by collaborators and
absorbed by the dispatcher and service layers: a lookup failure falls back
to whatever candidates are still available, a channel failure becomes an
``error`` attempt record for that one attempt.  Exhausting every candidate
is a normal outcome and has no exception.
"""

from __future__ import annotations


class PulseResQError(Exception):
    """Base class for all PulseResQ errors."""
    pass


class InputError(PulseResQError, ValueError):
    """Raised when an incident or coordinate is missing or invalid.

    Raised before ranking begins -- an incident is never partially processed.
    """
    pass


class LookupFailure(PulseResQError):
    """Raised when a facility data source is unavailable or returns garbage."""
    pass


class ChannelFailure(PulseResQError):
    """Raised by a transport when a notification cannot be delivered.

    Adapters convert this into an ``error`` attempt outcome; it is never
    fatal to the escalation session.
    """
    pass


class InvalidTransitionError(PulseResQError):
    """Raised when a session is asked to leave a terminal state."""
    pass


class SessionNotFoundError(PulseResQError, KeyError):
    """Raised when a session id is unknown or has expired from the store."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""

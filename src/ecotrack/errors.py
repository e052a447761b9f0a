"""Progression error taxonomy."""

from __future__ import annotations


class ProgressionError(Exception):
    """Base class for progression pipeline errors."""


class NotFoundError(ProgressionError):
    """A user, community or challenge does not exist."""


class InvalidStateError(ProgressionError):
    """The target aggregate is not in a state that accepts the write."""


class ConcurrencyConflictError(ProgressionError):
    """Lost a race on a conditional insert; another writer already established the state."""


class SinkFailureError(ProgressionError):
    """A feed or push-notification write failed."""

"""Exceptions raised by the reminder engine."""
from __future__ import annotations


class ReminderError(Exception):
    """Base exception for reminder engine operations."""


class ValidationError(ReminderError):
    """Caller input was rejected; nothing was changed."""


class NotFoundError(ReminderError):
    """A referenced owner, credential or schedule does not exist."""


class ScanError(ReminderError):
    """The due-set query failed, so no schedule was evaluated."""


class CommitError(ReminderError):
    """A send succeeded but the record could not be persisted."""

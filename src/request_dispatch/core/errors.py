"""Errors raised by lifecycle operations."""


class DispatchError(ValueError):
    """Base class for request dispatch failures surfaced to callers."""


class NotFoundError(DispatchError):
    """A referenced user, request, task or room does not exist."""


class ForbiddenError(DispatchError):
    """The caller is not the user allowed to perform the action."""


class InvalidStateError(DispatchError):
    """The action is not permitted from the current state."""

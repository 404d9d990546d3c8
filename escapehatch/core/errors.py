from __future__ import annotations


class EscapeHatchError(Exception):
    """Base error for the control plane core."""


class NotFoundError(EscapeHatchError):
    """Referenced hub, server, channel, binding, or report does not exist."""


class ForbiddenError(EscapeHatchError):
    """Actor is not authorized for the requested action at the requested scope."""


class ConflictError(EscapeHatchError):
    """Request conflicts with the actor's authority or the current state."""


class ExternalUnavailableError(EscapeHatchError):
    """Room-control homeserver is unreachable, failing, or behind an open breaker."""

"""Error taxonomy shared by the notification engine."""

from __future__ import annotations

from typing import Any, Optional


class NotificationError(Exception):
    """Base class for expected notification engine failures."""

    code = "notification_error"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class NotFoundError(NotificationError):
    """Raised for unknown notification, template, routine or appointment ids."""

    code = "not_found"


class PermissionDeniedError(NotificationError):
    """Raised when a doctor and patient share no appointment history."""

    code = "permission_denied"


class InvalidStateTransitionError(NotificationError):
    """Raised when a lifecycle transition is not legal from the current state."""

    code = "invalid_state_transition"


class ConcurrentUpdateError(InvalidStateTransitionError):
    """Raised when a row changed underneath a request-triggered transition."""

    code = "concurrent_update"


class PersistenceInconsistencyError(NotificationError):
    """Raised when a post-write verification disagrees with the intended state.

    This is fatal for the request: it is never retried and always surfaces to
    the caller.
    """

    code = "persistence_inconsistency"


class RenderingSkippedError(NotificationError):
    """Raised by strict rendering when placeholders remain unresolved."""

    code = "rendering_skipped"

    def __init__(self, unresolved: Optional[list] = None) -> None:
        names = sorted(set(unresolved or []))
        super().__init__(
            "Unresolved template placeholders: " + ", ".join(names),
            unresolved=names,
        )
        self.unresolved = names


class InvalidTemplateVariablesError(NotificationError):
    """Raised when template variables fail validation for a notification kind."""

    code = "invalid_template_variables"


__all__ = [
    "NotificationError",
    "NotFoundError",
    "PermissionDeniedError",
    "InvalidStateTransitionError",
    "ConcurrentUpdateError",
    "PersistenceInconsistencyError",
    "RenderingSkippedError",
    "InvalidTemplateVariablesError",
]

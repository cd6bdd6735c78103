"""External collaborator interfaces."""

from .interfaces import ActionHandler, ClassificationService, NotificationService

__all__ = [
    "ActionHandler",
    "ClassificationService",
    "NotificationService",
]

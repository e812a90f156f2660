"""
SQLAlchemy database models.

Models are organized by domain:
- base: Base declarative class and timestamp helpers
- user: User accounts (youth, elderly, admin)
- application: Interest / formal application records
- relationship: Relationships, stage requirements, stage transitions
- chat: Chat messages and notifications

Import any model from this module:
    from companion.db.models import User, Application, Relationship
"""

# Base class (must be imported first)
from .base import Base

from .user import User
from .application import Application, ACTIVE_APPLICATION_STATUSES
from .relationship import Relationship, StageRequirement, StageTransition, empty_stage_metrics
from .chat import Message, Notification

__all__ = [
    "Base",
    "User",
    "Application",
    "ACTIVE_APPLICATION_STATUSES",
    "Relationship",
    "StageRequirement",
    "StageTransition",
    "empty_stage_metrics",
    "Message",
    "Notification",
]

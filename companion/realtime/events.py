"""
Change events delivered by the notifier.

Each table gets its own event class; `ChangeEvent` is the closed union of
them, discriminated on `table`. Payloads that do not validate are dropped by
`parse_change_event` rather than passed on half-typed.
"""

import logging
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

log = logging.getLogger(__name__)

Operation = Literal["INSERT", "UPDATE", "DELETE"]


class ApplicationRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    youth_id: int
    elderly_id: int
    status: str
    youth_decision: str
    elderly_decision: str
    applied_at: datetime | None = None
    reviewed_at: datetime | None = None


class RelationshipRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    youth_id: int
    elderly_id: int
    current_stage: str
    status: str
    end_request_status: str
    stage_start_date: datetime | None = None


class RequirementRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    relationship_id: str
    stage: str
    is_completed: bool


class NotificationRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: str
    title: str
    message: str
    reference_id: str | None = None


class ApplicationChange(BaseModel):
    table: Literal["applications"] = "applications"
    operation: Operation
    new: ApplicationRow | None = None


class RelationshipChange(BaseModel):
    table: Literal["relationships"] = "relationships"
    operation: Operation
    new: RelationshipRow | None = None


class RequirementChange(BaseModel):
    table: Literal["stage_requirements"] = "stage_requirements"
    operation: Operation
    new: RequirementRow | None = None


class NotificationChange(BaseModel):
    table: Literal["notifications"] = "notifications"
    operation: Operation
    new: NotificationRow | None = None


ChangeEvent = Annotated[
    Union[ApplicationChange, RelationshipChange, RequirementChange, NotificationChange],
    Field(discriminator="table"),
]

_event_adapter = TypeAdapter(ChangeEvent)


def parse_change_event(payload: dict | str | bytes):
    """Validate a raw `{table, operation, new}` payload; None if it does not fit."""
    try:
        if isinstance(payload, (str, bytes)):
            return _event_adapter.validate_json(payload)
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        log.warning("Dropping malformed change event: %s", e.errors()[:3])
        return None


def application_changed(app, operation: str = "UPDATE") -> ApplicationChange:
    return ApplicationChange(operation=operation, new=ApplicationRow.model_validate(app))


def relationship_changed(rel, operation: str = "UPDATE") -> RelationshipChange:
    return RelationshipChange(operation=operation, new=RelationshipRow.model_validate(rel))


def requirement_changed(req, operation: str = "UPDATE") -> RequirementChange:
    return RequirementChange(operation=operation, new=RequirementRow.model_validate(req))


def notification_created(notification) -> NotificationChange:
    return NotificationChange(operation="INSERT", new=NotificationRow.model_validate(notification))

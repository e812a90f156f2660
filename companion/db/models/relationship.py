"""Relationship stage tracking models."""

from datetime import datetime

from sqlalchemy import Integer, String, Boolean, Text, ForeignKey, DateTime, Float, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow, new_id


def empty_stage_metrics() -> dict:
    return {
        "message_count": 0,
        "active_days": 0,
        "video_calls": 0,
        "meetings": 0,
        "progress_percentage": 0,
        "requirements_met": False,
    }


class Relationship(Base):
    """An accepted companionship moving through the four stages."""

    __tablename__ = "relationships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    youth_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    elderly_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    application_id: Mapped[str] = mapped_column(ForeignKey("applications.id"), unique=True)

    current_stage: Mapped[str] = mapped_column(String(30), default="getting_to_know")
    stage_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    stage_metrics: Mapped[dict] = mapped_column(JSON, default=empty_stage_metrics)

    status: Mapped[str] = mapped_column(String(20), default="active", index=True)  # active | paused | ended

    # End request / cooling-off
    end_request_status: Mapped[str] = mapped_column(String(30), default="none")
    end_request_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_request_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    end_request_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cooling_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    progress_frozen_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class StageRequirement(Base):
    """Checklist item gating advancement out of a stage."""

    __tablename__ = "stage_requirements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    relationship_id: Mapped[str] = mapped_column(ForeignKey("relationships.id", ondelete="CASCADE"), index=True)
    stage: Mapped[str] = mapped_column(String(30))

    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    completion_mode: Mapped[str] = mapped_column(String(20), default="counted")  # counted | sign_off
    metric: Mapped[str | None] = mapped_column(String(30), nullable=True)
    required_value: Mapped[int] = mapped_column(Integer, default=1)

    youth_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    elderly_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_stage_requirements_rel_stage", "relationship_id", "stage"),
    )


class StageTransition(Base):
    """One row per stage advance; the unique key makes advancing idempotent."""

    __tablename__ = "stage_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    relationship_id: Mapped[str] = mapped_column(ForeignKey("relationships.id", ondelete="CASCADE"))
    from_stage: Mapped[str] = mapped_column(String(30))
    to_stage: Mapped[str] = mapped_column(String(30))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("uq_stage_transitions_rel_to", "relationship_id", "to_stage", unique=True),
    )

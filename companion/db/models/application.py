"""Interest / formal application records."""

from datetime import datetime

from sqlalchemy import Integer, String, Text, ForeignKey, DateTime, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow, new_id

# Statuses that still count against the one-open-interest-per-pair rule.
# both_accepted stays in: the record is the match the relationship hangs off.
ACTIVE_APPLICATION_STATUSES = (
    "pending_interest",
    "pre_chat_active",
    "pending_review",
    "info_requested",
    "approved",
    "both_accepted",
)

_ACTIVE_PAIR_CLAUSE = "status IN ({})".format(
    ", ".join(f"'{s}'" for s in ACTIVE_APPLICATION_STATUSES)
)


class Application(Base):
    """One youth -> elderly pairing, from first interest to a final decision."""

    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    youth_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    elderly_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)

    status: Mapped[str] = mapped_column(String(30), default="pending_interest", index=True)
    youth_decision: Mapped[str] = mapped_column(String(20), default="pending")
    elderly_decision: Mapped[str] = mapped_column(String(20), default="pending")

    motivation_letter: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Admin review
    reviewed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    info_requested: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Review claim; expires after REVIEW_LOCK_MINUTES
    locked_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expiry_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    youth = relationship("User", foreign_keys=[youth_id], lazy="joined")
    elderly = relationship("User", foreign_keys=[elderly_id], lazy="joined")

    __table_args__ = (
        Index(
            "uq_applications_active_pair",
            "youth_id",
            "elderly_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PAIR_CLAUSE),
            sqlite_where=text(_ACTIVE_PAIR_CLAUSE),
        ),
    )

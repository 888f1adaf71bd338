import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Enum as SAEnum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from sessionswap.db.base import Base


class MeetingStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"


class Meeting(Base):
    """
    One concrete scheduled occurrence.

    Either standalone (template_id is NULL) or materialized from a MeetingTemplate.
    student_ids is a JSON list treated as a set; always assign a new list so the
    change is flushed.
    """

    __tablename__ = "meetings"
    __table_args__ = (CheckConstraint("start_at < end_at", name="ck_meetings_start_before_end"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tutor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    topic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(String(512), nullable=True)

    student_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[MeetingStatus] = mapped_column(
        SAEnum(MeetingStatus, name="meeting_status"),
        nullable=False,
        default=MeetingStatus.confirmed,
        index=True,
    )
    template_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    rescheduled_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    def has_student(self, student_id: str) -> bool:
        return student_id in (self.student_ids or [])

    def __repr__(self) -> str:
        return f"<Meeting subject={self.subject!r} start={self.start_at} status={self.status}>"

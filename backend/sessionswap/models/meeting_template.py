import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum as SAEnum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from sessionswap.db.base import Base


class Weekday(str, Enum):
    monday = "monday"
    tuesday = "tuesday"
    wednesday = "wednesday"
    thursday = "thursday"
    friday = "friday"
    saturday = "saturday"
    sunday = "sunday"


class TemplateStatus(str, Enum):
    active = "active"
    full = "full"
    inactive = "inactive"


class MeetingTemplate(Base):
    """A recurring weekly class section, e.g. every Tuesday 18:00 for 90 minutes."""

    __tablename__ = "meeting_templates"
    __table_args__ = (
        CheckConstraint("occupancy >= 0", name="ck_meeting_templates_occupancy_non_negative"),
        CheckConstraint("occupancy <= capacity", name="ck_meeting_templates_occupancy_within_capacity"),
        CheckConstraint("duration_minutes > 0", name="ck_meeting_templates_duration_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    weekday: Mapped[Weekday] = mapped_column(SAEnum(Weekday, name="weekday"), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    occupancy: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[TemplateStatus] = mapped_column(
        SAEnum(TemplateStatus, name="template_status"),
        nullable=False,
        default=TemplateStatus.active,
        index=True,
    )
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    @property
    def available_slots(self) -> int:
        return max(0, self.capacity - self.occupancy)

    def __repr__(self) -> str:
        return f"<MeetingTemplate code={self.code!r} {self.weekday.value} {self.start_time} {self.occupancy}/{self.capacity}>"

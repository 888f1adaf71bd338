import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SAEnum, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from sessionswap.db.base import Base


class RequestKind(str, Enum):
    cancel = "cancel"
    reschedule = "reschedule"


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


TERMINAL_REQUEST_STATUSES = frozenset({RequestStatus.approved, RequestStatus.rejected})


class SubstitutionRequest(Base):
    __tablename__ = "substitution_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    requester_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    tutor_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    origin_meeting_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    origin_template_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    kind: Mapped[RequestKind] = mapped_column(SAEnum(RequestKind, name="request_kind"), nullable=False)
    status: Mapped[RequestStatus] = mapped_column(
        SAEnum(RequestStatus, name="request_status"),
        nullable=False,
        default=RequestStatus.pending,
        index=True,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    preferred_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    chosen_alternative_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    response_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

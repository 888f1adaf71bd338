from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from sessionswap.models.substitution_request import RequestKind, RequestStatus
from sessionswap.services.occurrence import as_utc


class Alternative(BaseModel):
    id: str
    subject: str
    topic: str | None = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    is_online: bool = False
    location: str | None = None
    meeting_link: str | None = None
    occupancy: int
    capacity: int
    available_slots: int
    is_recurring_class: bool
    template_id: str | None = None
    template_code: str | None = None
    template_day: str | None = None


class OriginMeetingSummary(BaseModel):
    id: str
    subject: str
    start_at: datetime
    end_at: datetime
    template_id: str | None = None


class OriginTemplateSummary(BaseModel):
    id: str
    code: str
    subject: str
    weekday: str
    start_time: str


class AlternativesOut(BaseModel):
    alternatives: list[Alternative]
    origin_meeting: OriginMeetingSummary | None = None
    origin_template: OriginTemplateSummary | None = None


class SubstitutionRequestCreate(BaseModel):
    kind: RequestKind
    meeting_id: str | None = Field(default=None, min_length=1, max_length=36)
    template_id: str | None = Field(default=None, min_length=1, max_length=36)
    reason: str = Field(min_length=3, max_length=1000)
    preferred_start: datetime | None = None
    chosen_alternative_id: str | None = Field(default=None, min_length=1, max_length=36)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 3:
            raise ValueError("Reason must contain at least 3 non-blank characters")
        return stripped

    @model_validator(mode="after")
    def cancel_has_no_target(self) -> "SubstitutionRequestCreate":
        if self.kind == RequestKind.cancel and (self.preferred_start or self.chosen_alternative_id):
            raise ValueError("Cancel requests cannot carry a preferred time or an alternative")
        return self


class SubstitutionRequestApprove(BaseModel):
    response_message: str | None = Field(default=None, max_length=1000)
    new_start: datetime | None = None
    new_end: datetime | None = None
    chosen_alternative_id: str | None = Field(default=None, min_length=1, max_length=36)


class SubstitutionRequestReject(BaseModel):
    response_message: str = Field(min_length=1, max_length=1000)


class SubstitutionRequestOut(BaseModel):
    id: str
    requester_id: str
    tutor_id: str
    origin_meeting_id: str | None = None
    origin_template_id: str | None = None
    kind: RequestKind
    status: RequestStatus
    reason: str
    preferred_start: datetime | None = None
    chosen_alternative_id: str | None = None
    response_message: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("preferred_start", "created_at", "resolved_at")
    @classmethod
    def normalize_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class SubstitutionRequestPage(BaseModel):
    items: list[SubstitutionRequestOut]
    total: int
    page: int
    limit: int

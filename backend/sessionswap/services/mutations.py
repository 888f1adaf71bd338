"""
Micro-mutations planned by the request lifecycle and applied by the store.

A plan is a list of these; SubstitutionStore.mutate applies the whole list in
one transaction or none of it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sessionswap.models.substitution_request import RequestStatus, SubstitutionRequest


@dataclass(frozen=True)
class InsertRequest:
    request: SubstitutionRequest


@dataclass(frozen=True)
class ResolveRequest:
    """Compare-and-set pending -> status; fails with Conflict if no longer pending."""

    request_id: str
    status: RequestStatus
    response_message: str | None
    resolved_at: datetime


@dataclass(frozen=True)
class DeleteRequest:
    """Removes a request that is already approved or rejected."""

    request_id: str


@dataclass(frozen=True)
class RemoveStudentFromMeeting:
    meeting_id: str
    student_id: str


@dataclass(frozen=True)
class AddStudentToMeeting:
    meeting_id: str
    student_id: str
    capacity: int


@dataclass(frozen=True)
class WithdrawEnrollment:
    template_id: str
    student_id: str
    at: datetime


@dataclass(frozen=True)
class EnrollInTemplate:
    template_id: str
    student_id: str
    at: datetime


@dataclass(frozen=True)
class RetimeMeeting:
    meeting_id: str
    start_at: datetime
    end_at: datetime


@dataclass(frozen=True)
class RecordActivity:
    actor_id: str | None
    action: str
    entity_type: str
    entity_id: str
    details: dict = field(default_factory=dict)


Mutation = (
    InsertRequest
    | ResolveRequest
    | DeleteRequest
    | RemoveStudentFromMeeting
    | AddStudentToMeeting
    | WithdrawEnrollment
    | EnrollInTemplate
    | RetimeMeeting
    | RecordActivity
)

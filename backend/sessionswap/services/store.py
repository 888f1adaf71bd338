from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sessionswap.core.exceptions import ConflictError, ResourceNotFoundError, UnavailableError
from sessionswap.models.enrollment import Enrollment, EnrollmentStatus
from sessionswap.models.meeting import Meeting, MeetingStatus
from sessionswap.models.meeting_template import MeetingTemplate, TemplateStatus
from sessionswap.models.substitution_request import (
    TERMINAL_REQUEST_STATUSES,
    RequestKind,
    RequestStatus,
    SubstitutionRequest,
)
from sessionswap.services.audit import log_activity
from sessionswap.services.mutations import (
    AddStudentToMeeting,
    DeleteRequest,
    EnrollInTemplate,
    InsertRequest,
    Mutation,
    RecordActivity,
    RemoveStudentFromMeeting,
    ResolveRequest,
    RetimeMeeting,
    WithdrawEnrollment,
)
from sessionswap.services.occurrence import as_utc

logger = logging.getLogger(__name__)


class SubstitutionStore(Protocol):
    """Read/write capabilities the substitution core depends on."""

    def get_meeting(self, meeting_id: str) -> Meeting | None: ...

    def get_template(self, template_id: str) -> MeetingTemplate | None: ...

    def get_request(self, request_id: str) -> SubstitutionRequest | None: ...

    def find_meetings(
        self,
        *,
        tutor_id: str | None = None,
        subject: str | None = None,
        status: MeetingStatus | None = None,
        template_id: str | None = None,
        starts_at_or_after: datetime | None = None,
    ) -> list[Meeting]: ...

    def find_templates(
        self,
        *,
        tutor_id: str | None = None,
        subject: str | None = None,
        statuses: Iterable[TemplateStatus] | None = None,
        weekday: str | None = None,
        exclude_id: str | None = None,
    ) -> list[MeetingTemplate]: ...

    def find_enrollments(
        self,
        *,
        student_id: str | None = None,
        template_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]: ...

    def find_requests(
        self,
        *,
        requester_id: str | None = None,
        tutor_id: str | None = None,
        status: RequestStatus | None = None,
        kind: RequestKind | None = None,
        origin_meeting_id: str | None = None,
        origin_template_id: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[SubstitutionRequest], int]: ...

    def get_meetings_by_ids(self, meeting_ids: Iterable[str]) -> dict[str, Meeting]: ...

    def get_templates_by_ids(self, template_ids: Iterable[str]) -> dict[str, MeetingTemplate]: ...

    def mutate(self, mutations: Sequence[Mutation]) -> None: ...


class SqlAlchemyStore:
    """
    SubstitutionStore backed by a SQLAlchemy session.

    mutate() is the only method that writes. It applies every mutation in one
    transaction; capacity and status guards are re-checked against fresh rows,
    and any failure rolls the whole list back.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Store operation %s failed", operation)
            raise UnavailableError(
                "The schedule store is unavailable, please retry",
                details={"operation": operation, "error": exc.__class__.__name__},
            ) from exc

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_meeting(self, meeting_id: str) -> Meeting | None:
        with self._store_call("get_meeting"):
            return self.db.get(Meeting, meeting_id, populate_existing=True)

    def get_template(self, template_id: str) -> MeetingTemplate | None:
        with self._store_call("get_template"):
            return self.db.get(MeetingTemplate, template_id, populate_existing=True)

    def get_request(self, request_id: str) -> SubstitutionRequest | None:
        with self._store_call("get_request"):
            return self.db.get(SubstitutionRequest, request_id, populate_existing=True)

    def find_meetings(
        self,
        *,
        tutor_id: str | None = None,
        subject: str | None = None,
        status: MeetingStatus | None = None,
        template_id: str | None = None,
        starts_at_or_after: datetime | None = None,
    ) -> list[Meeting]:
        statement = select(Meeting)
        if tutor_id is not None:
            statement = statement.where(Meeting.tutor_id == tutor_id)
        if subject is not None:
            statement = statement.where(Meeting.subject == subject)
        if status is not None:
            statement = statement.where(Meeting.status == status)
        if template_id is not None:
            statement = statement.where(Meeting.template_id == template_id)
        if starts_at_or_after is not None:
            statement = statement.where(Meeting.start_at >= as_utc(starts_at_or_after))
        with self._store_call("find_meetings"):
            return list(self.db.execute(statement.order_by(Meeting.start_at, Meeting.id)).scalars())

    def find_templates(
        self,
        *,
        tutor_id: str | None = None,
        subject: str | None = None,
        statuses: Iterable[TemplateStatus] | None = None,
        weekday: str | None = None,
        exclude_id: str | None = None,
    ) -> list[MeetingTemplate]:
        statement = select(MeetingTemplate)
        if tutor_id is not None:
            statement = statement.where(MeetingTemplate.tutor_id == tutor_id)
        if subject is not None:
            statement = statement.where(MeetingTemplate.subject == subject)
        if statuses is not None:
            statement = statement.where(MeetingTemplate.status.in_(list(statuses)))
        if weekday is not None:
            statement = statement.where(MeetingTemplate.weekday == weekday)
        if exclude_id is not None:
            statement = statement.where(MeetingTemplate.id != exclude_id)
        with self._store_call("find_templates"):
            return list(self.db.execute(statement.order_by(MeetingTemplate.code, MeetingTemplate.id)).scalars())

    def find_enrollments(
        self,
        *,
        student_id: str | None = None,
        template_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        statement = select(Enrollment)
        if student_id is not None:
            statement = statement.where(Enrollment.student_id == student_id)
        if template_id is not None:
            statement = statement.where(Enrollment.template_id == template_id)
        if status is not None:
            statement = statement.where(Enrollment.status == status)
        with self._store_call("find_enrollments"):
            return list(self.db.execute(statement).scalars())

    def find_requests(
        self,
        *,
        requester_id: str | None = None,
        tutor_id: str | None = None,
        status: RequestStatus | None = None,
        kind: RequestKind | None = None,
        origin_meeting_id: str | None = None,
        origin_template_id: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> tuple[list[SubstitutionRequest], int]:
        conditions = []
        if requester_id is not None:
            conditions.append(SubstitutionRequest.requester_id == requester_id)
        if tutor_id is not None:
            conditions.append(SubstitutionRequest.tutor_id == tutor_id)
        if status is not None:
            conditions.append(SubstitutionRequest.status == status)
        if kind is not None:
            conditions.append(SubstitutionRequest.kind == kind)
        if origin_meeting_id is not None:
            conditions.append(SubstitutionRequest.origin_meeting_id == origin_meeting_id)
        if origin_template_id is not None:
            conditions.append(SubstitutionRequest.origin_template_id == origin_template_id)

        statement = (
            select(SubstitutionRequest)
            .where(*conditions)
            .order_by(SubstitutionRequest.created_at.desc(), SubstitutionRequest.id)
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._store_call("find_requests"):
            total = self.db.execute(
                select(func.count(SubstitutionRequest.id)).where(*conditions)
            ).scalar_one()
            return list(self.db.execute(statement).scalars()), total

    def get_meetings_by_ids(self, meeting_ids: Iterable[str]) -> dict[str, Meeting]:
        ids = sorted({item for item in meeting_ids if item})
        if not ids:
            return {}
        with self._store_call("get_meetings_by_ids"):
            return {item.id: item for item in self.db.execute(select(Meeting).where(Meeting.id.in_(ids))).scalars()}

    def get_templates_by_ids(self, template_ids: Iterable[str]) -> dict[str, MeetingTemplate]:
        ids = sorted({item for item in template_ids if item})
        if not ids:
            return {}
        with self._store_call("get_templates_by_ids"):
            return {
                item.id: item
                for item in self.db.execute(select(MeetingTemplate).where(MeetingTemplate.id.in_(ids))).scalars()
            }

    # ── Writes ────────────────────────────────────────────────────────────────

    def mutate(self, mutations: Sequence[Mutation]) -> None:
        handlers = {
            InsertRequest: self._insert_request,
            ResolveRequest: self._resolve_request,
            DeleteRequest: self._delete_request,
            RemoveStudentFromMeeting: self._remove_student_from_meeting,
            AddStudentToMeeting: self._add_student_to_meeting,
            WithdrawEnrollment: self._withdraw_enrollment,
            EnrollInTemplate: self._enroll_in_template,
            RetimeMeeting: self._retime_meeting,
            RecordActivity: self._record_activity,
        }
        with self._store_call("mutate"):
            try:
                for mutation in mutations:
                    handlers[type(mutation)](mutation)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

    def _fresh_meeting(self, meeting_id: str) -> Meeting:
        meeting = self.db.get(Meeting, meeting_id, populate_existing=True)
        if meeting is None:
            raise ResourceNotFoundError("Meeting", meeting_id)
        return meeting

    def _fresh_template(self, template_id: str) -> MeetingTemplate:
        template = self.db.get(MeetingTemplate, template_id, populate_existing=True)
        if template is None:
            raise ResourceNotFoundError("Class", template_id)
        return template

    def _insert_request(self, mutation: InsertRequest) -> None:
        self.db.add(mutation.request)
        self.db.flush()

    def _resolve_request(self, mutation: ResolveRequest) -> None:
        result = self.db.execute(
            update(SubstitutionRequest)
            .where(
                SubstitutionRequest.id == mutation.request_id,
                SubstitutionRequest.status == RequestStatus.pending,
            )
            .values(
                status=mutation.status,
                response_message=mutation.response_message,
                resolved_at=mutation.resolved_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        current = self.db.get(SubstitutionRequest, mutation.request_id, populate_existing=True)
        if current is None:
            raise ResourceNotFoundError("Substitution request", mutation.request_id)
        raise ConflictError(
            f"Request has already been {current.status.value}",
            details={"request_id": current.id, "status": current.status.value},
        )

    def _delete_request(self, mutation: DeleteRequest) -> None:
        result = self.db.execute(
            delete(SubstitutionRequest)
            .where(
                SubstitutionRequest.id == mutation.request_id,
                SubstitutionRequest.status.in_(list(TERMINAL_REQUEST_STATUSES)),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        current = self.db.get(SubstitutionRequest, mutation.request_id, populate_existing=True)
        if current is None:
            raise ResourceNotFoundError("Substitution request", mutation.request_id)
        raise ConflictError(
            "Pending requests cannot be deleted; approve or reject them first",
            details={"request_id": current.id, "status": current.status.value},
        )

    def _remove_student_from_meeting(self, mutation: RemoveStudentFromMeeting) -> None:
        meeting = self._fresh_meeting(mutation.meeting_id)
        if not meeting.has_student(mutation.student_id):
            raise ConflictError(
                "Student is no longer part of the original meeting",
                details={"meeting_id": meeting.id, "student_id": mutation.student_id},
            )
        meeting.student_ids = [item for item in meeting.student_ids if item != mutation.student_id]
        self.db.flush()

    def _add_student_to_meeting(self, mutation: AddStudentToMeeting) -> None:
        meeting = self._fresh_meeting(mutation.meeting_id)
        if meeting.status != MeetingStatus.confirmed:
            raise ConflictError(
                "The alternative meeting is no longer open",
                details={"meeting_id": meeting.id, "status": meeting.status.value},
            )
        if meeting.has_student(mutation.student_id):
            raise ConflictError(
                "Student is already part of the alternative meeting",
                details={"meeting_id": meeting.id, "student_id": mutation.student_id},
            )
        current = len(meeting.student_ids or [])
        if current >= mutation.capacity:
            raise ConflictError(
                "The alternative meeting is full",
                details={"meeting_id": meeting.id, "occupancy": current, "capacity": mutation.capacity},
            )
        meeting.student_ids = [*(meeting.student_ids or []), mutation.student_id]
        self.db.flush()

    def _withdraw_enrollment(self, mutation: WithdrawEnrollment) -> None:
        enrollment = self.db.execute(
            select(Enrollment)
            .where(
                Enrollment.template_id == mutation.template_id,
                Enrollment.student_id == mutation.student_id,
                Enrollment.status == EnrollmentStatus.active,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if enrollment is None:
            raise ConflictError(
                "Student is no longer enrolled in the original class",
                details={"template_id": mutation.template_id, "student_id": mutation.student_id},
            )
        enrollment.status = EnrollmentStatus.withdrawn
        enrollment.withdrawn_at = mutation.at

        self.db.execute(
            update(MeetingTemplate)
            .where(MeetingTemplate.id == mutation.template_id, MeetingTemplate.occupancy > 0)
            .values(occupancy=MeetingTemplate.occupancy - 1)
            .execution_options(synchronize_session=False)
        )
        template = self._fresh_template(mutation.template_id)
        if template.status == TemplateStatus.full and template.occupancy < template.capacity:
            template.status = TemplateStatus.active
        self.db.flush()

    def _enroll_in_template(self, mutation: EnrollInTemplate) -> None:
        enrollment = self.db.execute(
            select(Enrollment)
            .where(
                Enrollment.template_id == mutation.template_id,
                Enrollment.student_id == mutation.student_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if enrollment is not None and enrollment.status == EnrollmentStatus.active:
            raise ConflictError(
                "Student is already enrolled in the alternative class",
                details={"template_id": mutation.template_id, "student_id": mutation.student_id},
            )

        # Check and increment in one statement so concurrent writers cannot overfill.
        result = self.db.execute(
            update(MeetingTemplate)
            .where(
                MeetingTemplate.id == mutation.template_id,
                MeetingTemplate.status != TemplateStatus.inactive,
                MeetingTemplate.occupancy < MeetingTemplate.capacity,
            )
            .values(occupancy=MeetingTemplate.occupancy + 1)
            .execution_options(synchronize_session=False)
        )
        template = self._fresh_template(mutation.template_id)
        if result.rowcount != 1:
            raise ConflictError(
                f"Class {template.code} has no free slots",
                details={
                    "template_id": template.id,
                    "occupancy": template.occupancy,
                    "capacity": template.capacity,
                    "status": template.status.value,
                },
            )
        if template.occupancy >= template.capacity:
            template.status = TemplateStatus.full

        if enrollment is None:
            self.db.add(
                Enrollment(
                    student_id=mutation.student_id,
                    template_id=mutation.template_id,
                    status=EnrollmentStatus.active,
                    enrolled_at=mutation.at,
                )
            )
        else:
            enrollment.status = EnrollmentStatus.active
            enrollment.enrolled_at = mutation.at
            enrollment.withdrawn_at = None
        self.db.flush()

    def _retime_meeting(self, mutation: RetimeMeeting) -> None:
        meeting = self._fresh_meeting(mutation.meeting_id)
        meeting.rescheduled_from = meeting.start_at
        meeting.start_at = mutation.start_at
        meeting.end_at = mutation.end_at
        meeting.duration_minutes = int((mutation.end_at - mutation.start_at).total_seconds() // 60)
        self.db.flush()

    def _record_activity(self, mutation: RecordActivity) -> None:
        log_activity(
            self.db,
            actor_id=mutation.actor_id,
            action=mutation.action,
            entity_type=mutation.entity_type,
            entity_id=mutation.entity_id,
            details=mutation.details,
        )

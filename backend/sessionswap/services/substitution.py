"""
Cancel/reschedule request lifecycle.

States are pending -> approved | rejected; both outcomes are final. Approval plans
a list of mutations (request flip, student move, audit row) and hands it to the
store in one guarded section, so either all of it lands or none of it does and
the request stays pending.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone, tzinfo
import logging
import uuid

from sessionswap.core.config import Settings, get_settings
from sessionswap.core.exceptions import ConflictError, ForbiddenError, ResourceNotFoundError, ValidationError
from sessionswap.models.enrollment import EnrollmentStatus
from sessionswap.models.meeting import Meeting, MeetingStatus
from sessionswap.models.meeting_template import MeetingTemplate, TemplateStatus
from sessionswap.models.substitution_request import RequestKind, RequestStatus, SubstitutionRequest
from sessionswap.services.alternatives import MeetingOrigin, Origin, meeting_capacity
from sessionswap.services.locks import (
    KeyedLockRegistry,
    get_lock_registry,
    meeting_key,
    request_key,
    submission_key,
    template_key,
)
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
from sessionswap.services.occurrence import (
    WEEKDAY_TOKENS,
    as_utc,
    local_weekday_ordinal,
    parse_time_of_day,
    resolve_timezone,
    weekday_ordinal,
)
from sessionswap.services.store import SubstitutionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_APPROVAL_MESSAGE = "Your request has been approved."
MAX_PAGE_SIZE = 100
OPEN_MEETING_STATUSES = (MeetingStatus.pending, MeetingStatus.confirmed)
RUNNING_TEMPLATE_STATUSES = (TemplateStatus.active, TemplateStatus.full)
ENTITY_TYPE = "substitution_request"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


class SubstitutionService:
    def __init__(
        self,
        store: SubstitutionStore,
        *,
        locks: KeyedLockRegistry | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.locks = locks or get_lock_registry()
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def _tz(self) -> tzinfo:
        return resolve_timezone(self.settings.schedule_timezone)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_request(self, request_id: str) -> SubstitutionRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise ResourceNotFoundError("Substitution request", request_id)
        return request

    def list_requests(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        requester_id: str | None = None,
        tutor_id: str | None = None,
        status: RequestStatus | None = None,
        kind: RequestKind | None = None,
        origin_template_id: str | None = None,
    ) -> tuple[list[SubstitutionRequest], int]:
        if page < 1:
            raise ValidationError("page must be 1 or greater", details={"page": page})
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"limit": limit})
        return self.store.find_requests(
            requester_id=requester_id,
            tutor_id=tutor_id,
            status=status,
            kind=kind,
            origin_template_id=origin_template_id,
            offset=(page - 1) * limit,
            limit=limit,
        )

    # ── Create ────────────────────────────────────────────────────────────────

    def create_request(
        self,
        *,
        requester_id: str,
        kind: RequestKind,
        origin: Origin,
        reason: str,
        preferred_start: datetime | None = None,
        chosen_alternative_id: str | None = None,
    ) -> SubstitutionRequest:
        reason = _normalize_text(reason)
        if reason is None:
            raise ValidationError("A reason is required")
        if kind == RequestKind.cancel and (preferred_start is not None or chosen_alternative_id):
            raise ValidationError("Cancel requests cannot carry a preferred time or an alternative")

        now = self.clock()
        if isinstance(origin, MeetingOrigin):
            meeting = self._require_meeting(origin.meeting_id)
            if not meeting.has_student(requester_id):
                raise ForbiddenError("You are not a participant of this meeting", details={"meeting_id": meeting.id})
            if meeting.status not in OPEN_MEETING_STATUSES:
                raise ValidationError(
                    f"Cannot change a {meeting.status.value} meeting",
                    details={"meeting_id": meeting.id, "status": meeting.status.value},
                )
            tutor_id, subject = meeting.tutor_id, meeting.subject
            origin_meeting_id, origin_template_id = meeting.id, meeting.template_id
            duration = as_utc(meeting.end_at) - as_utc(meeting.start_at)
            duplicates_filter = {"origin_meeting_id": meeting.id}
            guard_key = submission_key(requester_id, meeting_key(meeting.id))
        else:
            template = self._require_template(origin.template_id)
            if not self.store.find_enrollments(
                student_id=requester_id, template_id=template.id, status=EnrollmentStatus.active
            ):
                raise ForbiddenError("You are not enrolled in this class", details={"template_id": template.id})
            upcoming = self.store.find_meetings(
                template_id=template.id,
                status=MeetingStatus.confirmed,
                starts_at_or_after=now,
            )
            tutor_id, subject = template.tutor_id, template.subject
            origin_meeting_id = upcoming[0].id if upcoming else None
            origin_template_id = template.id
            duration = timedelta(minutes=template.duration_minutes)
            duplicates_filter = {"origin_template_id": template.id}
            guard_key = submission_key(requester_id, template_key(template.id))

        if chosen_alternative_id:
            destination = self._require_destination(chosen_alternative_id)
            self._check_destination(
                destination,
                requester_id=requester_id,
                tutor_id=tutor_id,
                subject=subject,
                origin_meeting_id=origin_meeting_id,
                origin_template_id=origin_template_id,
            )
        elif preferred_start is not None:
            start = as_utc(preferred_start)
            if start <= now:
                raise ValidationError("The preferred time must be in the future", details={"preferred_start": start.isoformat()})
            self._ensure_tutor_free(
                tutor_id,
                start,
                start + duration,
                ignore_meeting_id=origin_meeting_id,
                ignore_template_id=origin_template_id,
            )

        request = SubstitutionRequest(
            id=str(uuid.uuid4()),
            requester_id=requester_id,
            tutor_id=tutor_id,
            origin_meeting_id=origin_meeting_id,
            origin_template_id=origin_template_id,
            kind=kind,
            status=RequestStatus.pending,
            reason=reason,
            preferred_start=as_utc(preferred_start) if preferred_start is not None else None,
            chosen_alternative_id=chosen_alternative_id,
            created_at=now,
        )
        with self.locks.guard(guard_key, timeout=self.settings.lock_timeout_seconds):
            _, pending_total = self.store.find_requests(
                requester_id=requester_id, status=RequestStatus.pending, limit=1, **duplicates_filter
            )
            if pending_total:
                raise ConflictError(
                    "You already have a pending request for this meeting",
                    details=dict(duplicates_filter),
                )
            self.store.mutate(
                [
                    InsertRequest(request),
                    RecordActivity(
                        actor_id=requester_id,
                        action="substitution_request.created",
                        entity_type=ENTITY_TYPE,
                        entity_id=request.id,
                        details={
                            "kind": kind.value,
                            "origin_meeting_id": origin_meeting_id,
                            "origin_template_id": origin_template_id,
                            "chosen_alternative_id": chosen_alternative_id,
                        },
                    ),
                ]
            )
        logger.info(
            "Created %s request %s for requester %s (meeting=%s class=%s)",
            kind.value,
            request.id,
            requester_id,
            origin_meeting_id,
            origin_template_id,
        )
        return request

    # ── Approve ───────────────────────────────────────────────────────────────

    def approve_request(
        self,
        request_id: str,
        *,
        actor_id: str | None = None,
        response_message: str | None = None,
        new_start: datetime | None = None,
        new_end: datetime | None = None,
        chosen_alternative_id: str | None = None,
    ) -> SubstitutionRequest:
        request = self.get_request(request_id)
        self._ensure_pending(request)
        if request.kind == RequestKind.cancel and (chosen_alternative_id or new_start or new_end):
            raise ValidationError("Cancel requests take no new time or alternative")
        if chosen_alternative_id and (new_start or new_end):
            raise ValidationError("Provide either a new time or an alternative, not both")

        alternative_id = chosen_alternative_id or request.chosen_alternative_id
        if request.kind == RequestKind.reschedule and (new_start or new_end):
            alternative_id = None

        destination = None
        keys = [request_key(request.id)]
        if request.origin_meeting_id:
            keys.append(meeting_key(request.origin_meeting_id))
        if request.kind == RequestKind.reschedule and alternative_id:
            destination = self._require_destination(alternative_id)
            keys.append(self._destination_key(destination))
            if isinstance(destination, MeetingTemplate) and request.origin_template_id:
                keys.append(template_key(request.origin_template_id))

        with self.locks.guard(*keys, timeout=self.settings.lock_timeout_seconds):
            # Re-read inside the guard; another approval may have won the race.
            request = self.get_request(request_id)
            self._ensure_pending(request)
            now = self.clock()

            if request.kind == RequestKind.cancel:
                branch, plan = "cancel", self._plan_cancel(request)
            elif destination is not None:
                branch, plan = "substitution", self._plan_substitution(request, destination, now)
            else:
                branch, plan = "retime", self._plan_retime(request, new_start, new_end, now)

            message = _normalize_text(response_message) or DEFAULT_APPROVAL_MESSAGE
            mutations: list[Mutation] = [
                ResolveRequest(request.id, RequestStatus.approved, message, now),
                *plan,
                RecordActivity(
                    actor_id=actor_id,
                    action="substitution_request.approved",
                    entity_type=ENTITY_TYPE,
                    entity_id=request.id,
                    details={"branch": branch, "destination_id": destination.id if destination else None},
                ),
            ]
            self.store.mutate(mutations)

        logger.info("Approved request %s via %s", request_id, branch)
        return self.get_request(request_id)

    def _plan_cancel(self, request: SubstitutionRequest) -> list[Mutation]:
        if not request.origin_meeting_id:
            raise ValidationError(
                "This request has no scheduled meeting to cancel",
                details={"request_id": request.id},
            )
        return [RemoveStudentFromMeeting(request.origin_meeting_id, request.requester_id)]

    def _plan_substitution(
        self,
        request: SubstitutionRequest,
        destination: Meeting | MeetingTemplate,
        now: datetime,
    ) -> list[Mutation]:
        destination = self._require_destination(destination.id)
        self._check_destination(
            destination,
            requester_id=request.requester_id,
            tutor_id=request.tutor_id,
            subject=self._origin_subject(request),
            origin_meeting_id=request.origin_meeting_id,
            origin_template_id=request.origin_template_id,
            check_capacity=False,
        )

        if isinstance(destination, MeetingTemplate):
            return [
                WithdrawEnrollment(request.origin_template_id, request.requester_id, now),
                EnrollInTemplate(destination.id, request.requester_id, now),
            ]

        templates = self.store.get_templates_by_ids([destination.template_id] if destination.template_id else [])
        capacity = meeting_capacity(destination, templates, self.settings)
        return [
            RemoveStudentFromMeeting(request.origin_meeting_id, request.requester_id),
            AddStudentToMeeting(destination.id, request.requester_id, capacity),
        ]

    def _plan_retime(
        self,
        request: SubstitutionRequest,
        new_start: datetime | None,
        new_end: datetime | None,
        now: datetime,
    ) -> list[Mutation]:
        if not request.origin_meeting_id:
            raise ValidationError(
                "This request has no scheduled meeting to move",
                details={"request_id": request.id},
            )
        meeting = self._require_meeting(request.origin_meeting_id)

        raw_start = new_start or request.preferred_start
        if raw_start is None:
            raise ValidationError("No new time provided", details={"request_id": request.id})
        start = as_utc(raw_start)
        if start <= now:
            raise ValidationError("The new time must be in the future", details={"new_start": start.isoformat()})
        if new_end is not None:
            end = as_utc(new_end)
            if end <= start:
                raise ValidationError(
                    "The new end must be after the new start",
                    details={"new_start": start.isoformat(), "new_end": end.isoformat()},
                )
        else:
            end = start + (as_utc(meeting.end_at) - as_utc(meeting.start_at))

        self._ensure_tutor_free(
            meeting.tutor_id,
            start,
            end,
            ignore_meeting_id=meeting.id,
            ignore_template_id=meeting.template_id,
        )
        return [RetimeMeeting(meeting.id, start, end)]

    # ── Reject / delete ───────────────────────────────────────────────────────

    def reject_request(
        self,
        request_id: str,
        *,
        response_message: str,
        actor_id: str | None = None,
    ) -> SubstitutionRequest:
        message = _normalize_text(response_message)
        if message is None:
            raise ValidationError("A response message is required when rejecting")

        with self.locks.guard(request_key(request_id), timeout=self.settings.lock_timeout_seconds):
            request = self.get_request(request_id)
            self._ensure_pending(request)
            self.store.mutate(
                [
                    ResolveRequest(request.id, RequestStatus.rejected, message, self.clock()),
                    RecordActivity(
                        actor_id=actor_id,
                        action="substitution_request.rejected",
                        entity_type=ENTITY_TYPE,
                        entity_id=request.id,
                    ),
                ]
            )
        logger.info("Rejected request %s", request_id)
        return self.get_request(request_id)

    def delete_request(self, request_id: str, *, actor_id: str | None = None) -> None:
        with self.locks.guard(request_key(request_id), timeout=self.settings.lock_timeout_seconds):
            self.store.mutate(
                [
                    DeleteRequest(request_id),
                    RecordActivity(
                        actor_id=actor_id,
                        action="substitution_request.deleted",
                        entity_type=ENTITY_TYPE,
                        entity_id=request_id,
                    ),
                ]
            )
        logger.info("Deleted request %s", request_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _require_meeting(self, meeting_id: str) -> Meeting:
        meeting = self.store.get_meeting(meeting_id)
        if meeting is None:
            raise ResourceNotFoundError("Meeting", meeting_id)
        return meeting

    def _require_template(self, template_id: str) -> MeetingTemplate:
        template = self.store.get_template(template_id)
        if template is None:
            raise ResourceNotFoundError("Class", template_id)
        return template

    def _require_destination(self, alternative_id: str) -> Meeting | MeetingTemplate:
        destination = self.store.get_meeting(alternative_id) or self.store.get_template(alternative_id)
        if destination is None:
            raise ResourceNotFoundError("Alternative", alternative_id)
        return destination

    @staticmethod
    def _destination_key(destination: Meeting | MeetingTemplate) -> str:
        if isinstance(destination, MeetingTemplate):
            return template_key(destination.id)
        return meeting_key(destination.id)

    @staticmethod
    def _ensure_pending(request: SubstitutionRequest) -> None:
        if request.status != RequestStatus.pending:
            raise ConflictError(
                f"Request has already been {request.status.value}",
                details={"request_id": request.id, "status": request.status.value},
            )

    def _origin_subject(self, request: SubstitutionRequest) -> str:
        if request.origin_meeting_id:
            meeting = self.store.get_meeting(request.origin_meeting_id)
            if meeting is not None:
                return meeting.subject
        if request.origin_template_id:
            template = self.store.get_template(request.origin_template_id)
            if template is not None:
                return template.subject
        raise ResourceNotFoundError("Meeting", request.origin_meeting_id or request.origin_template_id or "")

    def _check_destination(
        self,
        destination: Meeting | MeetingTemplate,
        *,
        requester_id: str,
        tutor_id: str,
        subject: str,
        origin_meeting_id: str | None,
        origin_template_id: str | None,
        check_capacity: bool = True,
    ) -> None:
        details = {"alternative_id": destination.id}
        if destination.tutor_id != tutor_id or destination.subject != subject:
            raise ValidationError("The alternative must be with the same tutor and subject", details=details)

        if isinstance(destination, MeetingTemplate):
            if origin_template_id is None:
                raise ValidationError("Only a class enrollment can move to another class", details=details)
            if destination.id == origin_template_id:
                raise ConflictError("The alternative is the class you are leaving", details=details)
            origin_template = self.store.get_template(origin_template_id)
            if origin_template is not None and weekday_ordinal(destination.weekday) == weekday_ordinal(
                origin_template.weekday
            ):
                raise ConflictError("The alternative class runs on the same weekday", details=details)
            if destination.status == TemplateStatus.inactive:
                raise ConflictError(f"Class {destination.code} is not running", details=details)
            if check_capacity and destination.occupancy >= destination.capacity:
                raise ConflictError(f"Class {destination.code} has no free slots", details=details)
            if self.store.find_enrollments(
                student_id=requester_id, template_id=destination.id, status=EnrollmentStatus.active
            ):
                raise ConflictError("You are already enrolled in the alternative class", details=details)
            return

        if origin_meeting_id is None:
            raise ValidationError("This class has no scheduled meeting to move from", details=details)
        if destination.id == origin_meeting_id:
            raise ConflictError("The alternative is the meeting you are leaving", details=details)
        origin_meeting = self.store.get_meeting(origin_meeting_id)
        tz = self._tz
        if origin_meeting is not None and local_weekday_ordinal(destination.start_at, tz) == local_weekday_ordinal(
            origin_meeting.start_at, tz
        ):
            raise ConflictError("The alternative meeting falls on the same weekday", details=details)
        if destination.status != MeetingStatus.confirmed:
            raise ConflictError("The alternative meeting is no longer open", details=details)
        if destination.has_student(requester_id):
            raise ConflictError("You are already part of the alternative meeting", details=details)
        if check_capacity:
            templates = self.store.get_templates_by_ids([destination.template_id] if destination.template_id else [])
            if len(destination.student_ids or []) >= meeting_capacity(destination, templates, self.settings):
                raise ConflictError("The alternative meeting is full", details=details)

    def _ensure_tutor_free(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        *,
        ignore_meeting_id: str | None = None,
        ignore_template_id: str | None = None,
    ) -> None:
        for meeting in self.store.find_meetings(tutor_id=tutor_id):
            if meeting.id == ignore_meeting_id or meeting.template_id is not None:
                continue
            if meeting.status not in OPEN_MEETING_STATUSES:
                continue
            if _overlaps(start, end, as_utc(meeting.start_at), as_utc(meeting.end_at)):
                raise ConflictError(
                    "The tutor already has a meeting at that time",
                    details={"meeting_id": meeting.id, "start_at": as_utc(meeting.start_at).isoformat()},
                )

        tz = self._tz
        local_start = start.astimezone(tz)
        weekday = WEEKDAY_TOKENS[local_weekday_ordinal(start, tz)]
        for template in self.store.find_templates(
            tutor_id=tutor_id, statuses=RUNNING_TEMPLATE_STATUSES, weekday=weekday
        ):
            if template.id == ignore_template_id:
                continue
            hour, minute = parse_time_of_day(template.start_time)
            slot_start = local_start.replace(hour=hour, minute=minute, second=0, microsecond=0)
            slot_end = slot_start + timedelta(minutes=template.duration_minutes)
            if _overlaps(start, end, slot_start, slot_end):
                raise ConflictError(
                    f"The tutor teaches class {template.code} at that time",
                    details={"template_id": template.id, "weekday": weekday, "start_time": template.start_time},
                )

"""
Candidate search for cancel/reschedule requests.

Given the meeting or class a student wants to leave, list the slots they could
move to: same tutor, same subject, a different weekday, free capacity, and not
one they already belong to. Read-only; never returns a partial list.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
import logging

from sessionswap.core.config import Settings
from sessionswap.core.exceptions import BadRequestError, ForbiddenError, ResourceNotFoundError
from sessionswap.models.enrollment import EnrollmentStatus
from sessionswap.models.meeting import Meeting, MeetingStatus
from sessionswap.models.meeting_template import MeetingTemplate, TemplateStatus
from sessionswap.schemas.substitution import (
    Alternative,
    AlternativesOut,
    OriginMeetingSummary,
    OriginTemplateSummary,
)
from sessionswap.services.occurrence import (
    as_utc,
    local_weekday_ordinal,
    next_occurrence,
    resolve_timezone,
    weekday_ordinal,
)
from sessionswap.services.store import SubstitutionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeetingOrigin:
    meeting_id: str


@dataclass(frozen=True)
class TemplateOrigin:
    template_id: str


Origin = MeetingOrigin | TemplateOrigin


def origin_from_ids(meeting_id: str | None, template_id: str | None) -> Origin:
    meeting_id = (meeting_id or "").strip() or None
    template_id = (template_id or "").strip() or None
    if meeting_id and template_id:
        raise BadRequestError(
            "Provide either meeting_id or template_id, not both",
            details={"meeting_id": meeting_id, "template_id": template_id},
        )
    if meeting_id:
        return MeetingOrigin(meeting_id)
    if template_id:
        return TemplateOrigin(template_id)
    raise BadRequestError("meeting_id or template_id is required")


def meeting_capacity(
    meeting: Meeting,
    templates_by_id: dict[str, MeetingTemplate],
    settings: Settings,
) -> int:
    if not meeting.template_id:
        return settings.standalone_meeting_capacity
    template = templates_by_id.get(meeting.template_id)
    if template is None:
        logger.warning(
            "Meeting %s references missing class %s; using fallback capacity %d",
            meeting.id,
            meeting.template_id,
            settings.template_meeting_fallback_capacity,
        )
        return settings.template_meeting_fallback_capacity
    return template.capacity


def summarize_meeting(meeting: Meeting) -> OriginMeetingSummary:
    return OriginMeetingSummary(
        id=meeting.id,
        subject=meeting.subject,
        start_at=as_utc(meeting.start_at),
        end_at=as_utc(meeting.end_at),
        template_id=meeting.template_id,
    )


def summarize_template(template: MeetingTemplate) -> OriginTemplateSummary:
    return OriginTemplateSummary(
        id=template.id,
        code=template.code,
        subject=template.subject,
        weekday=template.weekday.value,
        start_time=template.start_time,
    )


def list_alternatives(
    store: SubstitutionStore,
    origin: Origin,
    requester_id: str,
    *,
    now: datetime,
    settings: Settings,
) -> AlternativesOut:
    tz = resolve_timezone(settings.schedule_timezone)
    if isinstance(origin, MeetingOrigin):
        return _meeting_alternatives(store, origin.meeting_id, requester_id, now=now, tz=tz, settings=settings)
    return _template_alternatives(store, origin.template_id, requester_id, now=now, tz=tz, settings=settings)


def _meeting_alternatives(
    store: SubstitutionStore,
    meeting_id: str,
    requester_id: str,
    *,
    now: datetime,
    tz: tzinfo,
    settings: Settings,
) -> AlternativesOut:
    origin = store.get_meeting(meeting_id)
    if origin is None:
        raise ResourceNotFoundError("Meeting", meeting_id)
    if not origin.has_student(requester_id):
        raise ForbiddenError("You are not a participant of this meeting", details={"meeting_id": meeting_id})

    excluded_weekday = local_weekday_ordinal(origin.start_at, tz)
    candidates = store.find_meetings(
        tutor_id=origin.tutor_id,
        subject=origin.subject,
        status=MeetingStatus.confirmed,
        starts_at_or_after=now,
    )
    templates_by_id = store.get_templates_by_ids(
        [item.template_id for item in candidates if item.template_id] + [origin.template_id]
    )

    alternatives: list[Alternative] = []
    for candidate in candidates:
        if candidate.id == origin.id:
            continue
        if local_weekday_ordinal(candidate.start_at, tz) == excluded_weekday:
            continue
        capacity = meeting_capacity(candidate, templates_by_id, settings)
        occupancy = len(candidate.student_ids or [])
        if occupancy >= capacity:
            continue
        if candidate.has_student(requester_id):
            continue

        template = templates_by_id.get(candidate.template_id) if candidate.template_id else None
        alternatives.append(
            Alternative(
                id=candidate.id,
                subject=candidate.subject,
                topic=candidate.topic,
                start_at=as_utc(candidate.start_at),
                end_at=as_utc(candidate.end_at),
                duration_minutes=candidate.duration_minutes,
                is_online=candidate.is_online,
                location=candidate.location,
                meeting_link=candidate.meeting_link,
                occupancy=occupancy,
                capacity=capacity,
                available_slots=capacity - occupancy,
                is_recurring_class=False,
                template_id=candidate.template_id,
                template_code=template.code if template else None,
                template_day=template.weekday.value if template else None,
            )
        )

    alternatives.sort(key=lambda item: (item.start_at, item.id))
    origin_template = templates_by_id.get(origin.template_id) if origin.template_id else None
    return AlternativesOut(
        alternatives=alternatives[: settings.alternatives_limit],
        origin_meeting=summarize_meeting(origin),
        origin_template=summarize_template(origin_template) if origin_template else None,
    )


def _template_alternatives(
    store: SubstitutionStore,
    template_id: str,
    requester_id: str,
    *,
    now: datetime,
    tz: tzinfo,
    settings: Settings,
) -> AlternativesOut:
    origin = store.get_template(template_id)
    if origin is None:
        raise ResourceNotFoundError("Class", template_id)

    enrolled_template_ids = {
        item.template_id
        for item in store.find_enrollments(student_id=requester_id, status=EnrollmentStatus.active)
    }
    if origin.id not in enrolled_template_ids:
        raise ForbiddenError("You are not enrolled in this class", details={"template_id": template_id})

    origin_day = weekday_ordinal(origin.weekday)
    candidates = store.find_templates(
        tutor_id=origin.tutor_id,
        subject=origin.subject,
        statuses=[TemplateStatus.active],
        exclude_id=origin.id,
    )

    ranked: list[tuple[int, Alternative]] = []
    for candidate in candidates:
        candidate_day = weekday_ordinal(candidate.weekday)
        if candidate_day == origin_day:
            continue
        if candidate.occupancy >= candidate.capacity:
            continue
        if candidate.id in enrolled_template_ids:
            continue

        start_at, end_at = next_occurrence(
            candidate.weekday,
            candidate.start_time,
            now,
            candidate.duration_minutes,
            tz,
        )
        ranked.append(
            (
                candidate_day,
                Alternative(
                    id=candidate.id,
                    subject=candidate.subject,
                    start_at=start_at,
                    end_at=end_at,
                    duration_minutes=candidate.duration_minutes,
                    is_online=candidate.is_online,
                    location=candidate.location,
                    occupancy=candidate.occupancy,
                    capacity=candidate.capacity,
                    available_slots=candidate.capacity - candidate.occupancy,
                    is_recurring_class=True,
                    template_id=candidate.id,
                    template_code=candidate.code,
                    template_day=candidate.weekday.value,
                ),
            )
        )

    ranked.sort(key=lambda item: (item[0], item[1].start_at, item[1].id))
    return AlternativesOut(
        alternatives=[item for _, item in ranked[: settings.alternatives_limit]],
        origin_meeting=None,
        origin_template=summarize_template(origin),
    )

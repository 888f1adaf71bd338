from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from sessionswap.core.exceptions import ConflictError, ForbiddenError, ResourceNotFoundError, ValidationError
from sessionswap.models import (
    ActivityLog,
    Enrollment,
    EnrollmentStatus,
    Meeting,
    MeetingStatus,
    MeetingTemplate,
    RequestKind,
    RequestStatus,
    TemplateStatus,
)
from sessionswap.services.alternatives import MeetingOrigin, TemplateOrigin
from sessionswap.services.occurrence import as_utc
from sessionswap.services.substitution import DEFAULT_APPROVAL_MESSAGE

from conftest import NOW, TUTOR


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def fresh(db_session, model, row_id):
    return db_session.get(model, row_id, populate_existing=True)


def active_enrollment(db_session, template_id, student_id):
    return db_session.execute(
        select(Enrollment).where(
            Enrollment.template_id == template_id,
            Enrollment.student_id == student_id,
            Enrollment.status == EnrollmentStatus.active,
        )
    ).scalar_one_or_none()


# ── Create ────────────────────────────────────────────────────────────────────


def test_create_cancel_request_starts_pending(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])

    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.cancel,
        origin=MeetingOrigin(meeting.id),
        reason="  Doctor appointment  ",
    )

    stored = service.get_request(request.id)
    assert stored.status == RequestStatus.pending
    assert stored.tutor_id == TUTOR
    assert stored.reason == "Doctor appointment"
    assert as_utc(stored.created_at) == NOW
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s1"]

    log = db_session.execute(select(ActivityLog).where(ActivityLog.entity_id == request.id)).scalar_one()
    assert log.action == "substitution_request.created"
    assert log.actor_id == "s1"


def test_create_rejects_non_participants_and_closed_meetings(seed, service):
    meeting = seed.meeting(at(9, 16), student_ids=["s2"])
    done = seed.meeting(at(10, 16), student_ids=["s1"], status=MeetingStatus.completed)

    with pytest.raises(ForbiddenError):
        service.create_request(
            requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Busy"
        )
    with pytest.raises(ValidationError):
        service.create_request(requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(done.id), reason="Busy")
    with pytest.raises(ResourceNotFoundError):
        service.create_request(
            requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin("missing"), reason="Busy"
        )


def test_create_requires_a_reason(seed, service):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])

    with pytest.raises(ValidationError):
        service.create_request(requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="   ")


def test_duplicate_pending_request_conflicts(seed, service):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    service.create_request(requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Busy")

    with pytest.raises(ConflictError):
        service.create_request(
            requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Still busy"
        )


def test_chosen_alternative_is_validated_at_create(seed, service):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    other_tutor = seed.meeting(at(10, 16), tutor_id="tutor-2")
    full = seed.meeting(at(11, 16), student_ids=["a", "b", "c", "d", "e"])
    joined = seed.meeting(at(12, 16), student_ids=["s1"])
    wednesday_class = seed.template("wednesday", "18:00")

    def create(alternative_id):
        return service.create_request(
            requester_id="s1",
            kind=RequestKind.reschedule,
            origin=MeetingOrigin(meeting.id),
            reason="Exam week",
            chosen_alternative_id=alternative_id,
        )

    with pytest.raises(ValidationError):
        create(other_tutor.id)
    with pytest.raises(ConflictError):
        create(full.id)
    with pytest.raises(ConflictError):
        create(joined.id)
    with pytest.raises(ConflictError):
        create(meeting.id)
    with pytest.raises(ResourceNotFoundError):
        create("missing")
    with pytest.raises(ValidationError, match="class enrollment"):
        create(wednesday_class.id)

    monday_class = seed.template("monday", "18:00")
    friday_meeting = seed.meeting(at(13, 16))
    seed.enroll(monday_class, "s1")
    with pytest.raises(ValidationError, match="no scheduled meeting"):
        service.create_request(
            requester_id="s1",
            kind=RequestKind.reschedule,
            origin=TemplateOrigin(monday_class.id),
            reason="Exam week",
            chosen_alternative_id=friday_meeting.id,
        )


def test_alternative_on_the_origin_weekday_is_refused(seed, service, db_session):
    evening = seed.template("monday", "18:00")
    morning = seed.template("monday", "09:00")
    seed.enroll(evening, "s2")
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    next_monday = seed.meeting(at(16, 10))

    with pytest.raises(ConflictError, match="same weekday"):
        service.create_request(
            requester_id="s2",
            kind=RequestKind.reschedule,
            origin=TemplateOrigin(evening.id),
            reason="Shift change",
            chosen_alternative_id=morning.id,
        )
    with pytest.raises(ConflictError, match="same weekday"):
        service.create_request(
            requester_id="s1",
            kind=RequestKind.reschedule,
            origin=MeetingOrigin(meeting.id),
            reason="Shift change",
            chosen_alternative_id=next_monday.id,
        )

    request = service.create_request(
        requester_id="s1", kind=RequestKind.reschedule, origin=MeetingOrigin(meeting.id), reason="Shift change"
    )
    with pytest.raises(ConflictError, match="same weekday"):
        service.approve_request(request.id, actor_id=TUTOR, chosen_alternative_id=next_monday.id)

    assert service.get_request(request.id).status == RequestStatus.pending
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s1"]
    assert fresh(db_session, Meeting, next_monday.id).student_ids == []


def test_preferred_start_must_be_future_and_free_for_the_tutor(seed, service):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    seed.meeting(at(10, 15), duration_minutes=60, student_ids=["s9"])
    seed.template("wednesday", "18:00", duration_minutes=90)

    def create(preferred_start):
        return service.create_request(
            requester_id="s1",
            kind=RequestKind.reschedule,
            origin=MeetingOrigin(meeting.id),
            reason="Exam week",
            preferred_start=preferred_start,
        )

    with pytest.raises(ValidationError):
        create(at(4, 16))
    with pytest.raises(ConflictError, match="already has a meeting"):
        create(at(10, 15, 30))
    with pytest.raises(ConflictError, match="teaches class"):
        create(at(11, 19))

    request = create(at(10, 17))
    assert as_utc(request.preferred_start) == at(10, 17)


def test_template_origin_resolves_its_next_confirmed_meeting(seed, service):
    template = seed.template("monday", "18:00")
    seed.enroll(template, "s1")
    seed.meeting(at(2, 18), template_id=template.id, student_ids=["s1"])  # past
    upcoming = seed.meeting(at(9, 18), template_id=template.id, student_ids=["s1"])
    seed.meeting(at(16, 18), template_id=template.id, student_ids=["s1"])

    request = service.create_request(
        requester_id="s1", kind=RequestKind.reschedule, origin=TemplateOrigin(template.id), reason="Moving"
    )

    assert request.origin_template_id == template.id
    assert request.origin_meeting_id == upcoming.id


def test_template_origin_requires_enrollment(seed, service):
    template = seed.template("monday", "18:00")

    with pytest.raises(ForbiddenError):
        service.create_request(
            requester_id="s1", kind=RequestKind.reschedule, origin=TemplateOrigin(template.id), reason="Moving"
        )


# ── Approve ───────────────────────────────────────────────────────────────────


def test_cancel_approval_only_touches_the_origin_student_list(seed, service, db_session):
    class_section = seed.template("tuesday", "18:00", occupancy=4)
    meeting = seed.meeting(at(9, 16), student_ids=["s1", "s2"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Sick"
    )

    approved = service.approve_request(request.id, actor_id=TUTOR)

    assert approved.status == RequestStatus.approved
    assert approved.response_message == DEFAULT_APPROVAL_MESSAGE
    assert as_utc(approved.resolved_at) == NOW
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s2"]
    assert fresh(db_session, MeetingTemplate, class_section.id).occupancy == 4


def test_class_substitution_moves_enrollment_and_occupancy(seed, service, db_session):
    monday = seed.template("monday", "18:00", capacity=10, occupancy=5)
    seed.enroll(monday, "s1")
    wednesday = seed.template("wednesday", "18:00", capacity=4, occupancy=3)
    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.reschedule,
        origin=TemplateOrigin(monday.id),
        reason="Work shift changed",
        chosen_alternative_id=wednesday.id,
    )

    approved = service.approve_request(request.id, actor_id=TUTOR, response_message="See you Wednesday")

    assert approved.status == RequestStatus.approved
    assert approved.response_message == "See you Wednesday"
    origin = fresh(db_session, MeetingTemplate, monday.id)
    destination = fresh(db_session, MeetingTemplate, wednesday.id)
    assert origin.occupancy == 5
    assert destination.occupancy == 4
    assert destination.status == TemplateStatus.full
    assert destination.occupancy <= destination.capacity
    assert active_enrollment(db_session, monday.id, "s1") is None
    assert active_enrollment(db_session, wednesday.id, "s1") is not None

    with pytest.raises(ConflictError):
        service.approve_request(request.id, actor_id=TUTOR)
    assert fresh(db_session, MeetingTemplate, monday.id).occupancy == 5
    assert fresh(db_session, MeetingTemplate, wednesday.id).occupancy == 4


def test_withdrawal_from_full_class_reopens_it(seed, service, db_session):
    monday = seed.template("monday", "18:00", capacity=2, occupancy=1)
    seed.enroll(monday, "s1")
    assert monday.status == TemplateStatus.full
    friday = seed.template("friday", "18:00")
    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.reschedule,
        origin=TemplateOrigin(monday.id),
        reason="Work shift changed",
        chosen_alternative_id=friday.id,
    )

    service.approve_request(request.id, actor_id=TUTOR)

    origin = fresh(db_session, MeetingTemplate, monday.id)
    assert (origin.occupancy, origin.status) == (1, TemplateStatus.active)


def test_full_destination_at_approval_leaves_everything_untouched(seed, service, db_session):
    monday = seed.template("monday", "18:00", occupancy=5)
    seed.enroll(monday, "s1")
    wednesday = seed.template("wednesday", "18:00", capacity=3, occupancy=2)
    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.reschedule,
        origin=TemplateOrigin(monday.id),
        reason="Work shift changed",
        chosen_alternative_id=wednesday.id,
    )
    # Someone else takes the last slot before the tutor gets to it.
    seed.enroll(wednesday, "s7")

    with pytest.raises(ConflictError, match="no free slots"):
        service.approve_request(request.id, actor_id=TUTOR)

    assert service.get_request(request.id).status == RequestStatus.pending
    assert fresh(db_session, MeetingTemplate, monday.id).occupancy == 6
    assert fresh(db_session, MeetingTemplate, wednesday.id).occupancy == 3
    assert active_enrollment(db_session, monday.id, "s1") is not None
    assert active_enrollment(db_session, wednesday.id, "s1") is None


def test_meeting_substitution_moves_the_student(seed, service, db_session):
    origin = seed.meeting(at(9, 16), student_ids=["s1", "s2"])
    destination = seed.meeting(at(11, 16), student_ids=["s3"])
    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.reschedule,
        origin=MeetingOrigin(origin.id),
        reason="Clash with lab",
        chosen_alternative_id=destination.id,
    )

    service.approve_request(request.id, actor_id=TUTOR)

    origin_students = fresh(db_session, Meeting, origin.id).student_ids
    destination_students = fresh(db_session, Meeting, destination.id).student_ids
    assert "s1" not in origin_students
    assert destination_students == ["s3", "s1"]


def test_alternative_chosen_at_approval_time(seed, service, db_session):
    origin = seed.meeting(at(9, 16), student_ids=["s1"])
    destination = seed.meeting(at(13, 16))
    request = service.create_request(
        requester_id="s1", kind=RequestKind.reschedule, origin=MeetingOrigin(origin.id), reason="Clash with lab"
    )

    service.approve_request(request.id, actor_id=TUTOR, chosen_alternative_id=destination.id)

    assert fresh(db_session, Meeting, destination.id).student_ids == ["s1"]
    assert fresh(db_session, Meeting, origin.id).student_ids == []


def test_retime_uses_preferred_start_and_keeps_duration(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), duration_minutes=75, student_ids=["s1"])
    request = service.create_request(
        requester_id="s1",
        kind=RequestKind.reschedule,
        origin=MeetingOrigin(meeting.id),
        reason="Later please",
        preferred_start=at(10, 12),
    )

    service.approve_request(request.id, actor_id=TUTOR)

    retimed = fresh(db_session, Meeting, meeting.id)
    assert as_utc(retimed.start_at) == at(10, 12)
    assert as_utc(retimed.end_at) == at(10, 13, 15)
    assert retimed.duration_minutes == 75
    assert as_utc(retimed.rescheduled_from) == at(9, 16)
    assert retimed.student_ids == ["s1"]


def test_retime_honours_caller_supplied_window(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), duration_minutes=60, student_ids=["s1"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.reschedule, origin=MeetingOrigin(meeting.id), reason="Later please"
    )

    with pytest.raises(ValidationError):
        service.approve_request(request.id, actor_id=TUTOR, new_start=at(12, 9), new_end=at(12, 9))

    service.approve_request(request.id, actor_id=TUTOR, new_start=at(12, 9), new_end=at(12, 11))

    retimed = fresh(db_session, Meeting, meeting.id)
    assert (as_utc(retimed.start_at), as_utc(retimed.end_at)) == (at(12, 9), at(12, 11))
    assert retimed.duration_minutes == 120


def test_retime_without_any_time_fails_and_stays_pending(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.reschedule, origin=MeetingOrigin(meeting.id), reason="Later please"
    )

    with pytest.raises(ValidationError, match="No new time provided"):
        service.approve_request(request.id, actor_id=TUTOR)

    assert service.get_request(request.id).status == RequestStatus.pending
    assert as_utc(fresh(db_session, Meeting, meeting.id).start_at) == at(9, 16)


# ── Reject / delete / list ────────────────────────────────────────────────────


def test_reject_is_terminal_and_side_effect_free(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Sick"
    )

    with pytest.raises(ValidationError):
        service.reject_request(request.id, response_message="  ")

    rejected = service.reject_request(request.id, response_message="Please attend", actor_id=TUTOR)
    assert rejected.status == RequestStatus.rejected
    assert rejected.response_message == "Please attend"
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s1"]

    with pytest.raises(ConflictError):
        service.reject_request(request.id, response_message="Again")
    with pytest.raises(ConflictError):
        service.approve_request(request.id)
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s1"]


def test_delete_only_terminal_requests(seed, service, db_session):
    meeting = seed.meeting(at(9, 16), student_ids=["s1", "s2"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Sick"
    )

    with pytest.raises(ConflictError):
        service.delete_request(request.id)

    service.approve_request(request.id, actor_id=TUTOR)
    service.delete_request(request.id, actor_id="s1")

    with pytest.raises(ResourceNotFoundError):
        service.get_request(request.id)
    with pytest.raises(ResourceNotFoundError):
        service.delete_request(request.id)
    # The swap done at approval is not undone.
    assert fresh(db_session, Meeting, meeting.id).student_ids == ["s2"]


def test_list_requests_filters_and_pages_newest_first(seed, service, clock):
    meeting = seed.meeting(at(9, 16), student_ids=["s1", "s2", "s3"])
    created = []
    for student in ("s1", "s2", "s3"):
        created.append(
            service.create_request(
                requester_id=student, kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Sick"
            )
        )
        clock.advance(minutes=5)
    service.reject_request(created[0].id, response_message="No")

    items, total = service.list_requests(page=1, limit=2, tutor_id=TUTOR)
    assert total == 3
    assert [item.id for item in items] == [created[2].id, created[1].id]

    items, total = service.list_requests(page=2, limit=2, tutor_id=TUTOR)
    assert [item.id for item in items] == [created[0].id]

    items, total = service.list_requests(tutor_id=TUTOR, status=RequestStatus.pending)
    assert total == 2

    items, total = service.list_requests(requester_id="s1")
    assert [item.id for item in items] == [created[0].id]

    with pytest.raises(ValidationError):
        service.list_requests(page=0)
    with pytest.raises(ValidationError):
        service.list_requests(limit=500)


def test_approval_clock_is_used_for_resolution_time(seed, service, clock):
    meeting = seed.meeting(at(9, 16), student_ids=["s1"])
    request = service.create_request(
        requester_id="s1", kind=RequestKind.cancel, origin=MeetingOrigin(meeting.id), reason="Sick"
    )
    clock.advance(hours=2)

    approved = service.approve_request(request.id, actor_id=TUTOR)

    assert as_utc(approved.resolved_at) == NOW + timedelta(hours=2)
    assert as_utc(approved.created_at) == NOW

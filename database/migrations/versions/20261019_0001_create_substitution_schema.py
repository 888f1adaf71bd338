"""create substitution schema

Revision ID: 20261019_0001
Revises: None
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


weekday_enum = sa.Enum(
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday", name="weekday"
)
template_status_enum = sa.Enum("active", "full", "inactive", name="template_status")
meeting_status_enum = sa.Enum("pending", "confirmed", "completed", "cancelled", name="meeting_status")
enrollment_status_enum = sa.Enum("active", "withdrawn", name="enrollment_status")
request_kind_enum = sa.Enum("cancel", "reschedule", name="request_kind")
request_status_enum = sa.Enum("pending", "approved", "rejected", name="request_status")


def upgrade() -> None:
    op.create_table(
        "meeting_templates",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("tutor_id", sa.String(length=36), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("weekday", weekday_enum, nullable=False),
        sa.Column("start_time", sa.String(length=5), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("occupancy", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", template_status_enum, nullable=False, server_default="active"),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("occupancy >= 0", name="ck_meeting_templates_occupancy_non_negative"),
        sa.CheckConstraint("occupancy <= capacity", name="ck_meeting_templates_occupancy_within_capacity"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_meeting_templates_duration_positive"),
    )
    op.create_index("ix_meeting_templates_tutor_id", "meeting_templates", ["tutor_id"])
    op.create_index("ix_meeting_templates_subject", "meeting_templates", ["subject"])
    op.create_index("ix_meeting_templates_status", "meeting_templates", ["status"])

    op.create_table(
        "meetings",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("tutor_id", sa.String(length=36), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("topic", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("meeting_link", sa.String(length=512), nullable=True),
        sa.Column("student_ids", sa.JSON(), nullable=False),
        sa.Column("status", meeting_status_enum, nullable=False, server_default="confirmed"),
        sa.Column("template_id", sa.String(length=36), nullable=True),
        sa.Column("rescheduled_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("start_at < end_at", name="ck_meetings_start_before_end"),
    )
    op.create_index("ix_meetings_tutor_id", "meetings", ["tutor_id"])
    op.create_index("ix_meetings_subject", "meetings", ["subject"])
    op.create_index("ix_meetings_start_at", "meetings", ["start_at"])
    op.create_index("ix_meetings_status", "meetings", ["status"])
    op.create_index("ix_meetings_template_id", "meetings", ["template_id"])

    op.create_table(
        "enrollments",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=36), nullable=False),
        sa.Column("status", enrollment_status_enum, nullable=False, server_default="active"),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("student_id", "template_id", name="uq_enrollment_student_template"),
    )
    op.create_index("ix_enrollments_student_id", "enrollments", ["student_id"])
    op.create_index("ix_enrollments_template_id", "enrollments", ["template_id"])
    op.create_index("ix_enrollments_status", "enrollments", ["status"])

    op.create_table(
        "substitution_requests",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("requester_id", sa.String(length=36), nullable=False),
        sa.Column("tutor_id", sa.String(length=36), nullable=False),
        sa.Column("origin_meeting_id", sa.String(length=36), nullable=True),
        sa.Column("origin_template_id", sa.String(length=36), nullable=True),
        sa.Column("kind", request_kind_enum, nullable=False),
        sa.Column("status", request_status_enum, nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("preferred_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("chosen_alternative_id", sa.String(length=36), nullable=True),
        sa.Column("response_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_substitution_requests_requester_id", "substitution_requests", ["requester_id"])
    op.create_index("ix_substitution_requests_tutor_id", "substitution_requests", ["tutor_id"])
    op.create_index("ix_substitution_requests_origin_meeting_id", "substitution_requests", ["origin_meeting_id"])
    op.create_index("ix_substitution_requests_origin_template_id", "substitution_requests", ["origin_template_id"])
    op.create_index("ix_substitution_requests_status", "substitution_requests", ["status"])

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=100), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_actor_id", "activity_logs", ["actor_id"])
    op.create_index("ix_activity_logs_entity_id", "activity_logs", ["entity_id"])


def downgrade() -> None:
    op.drop_index("ix_activity_logs_entity_id", table_name="activity_logs")
    op.drop_index("ix_activity_logs_actor_id", table_name="activity_logs")
    op.drop_table("activity_logs")

    for index_name in (
        "ix_substitution_requests_status",
        "ix_substitution_requests_origin_template_id",
        "ix_substitution_requests_origin_meeting_id",
        "ix_substitution_requests_tutor_id",
        "ix_substitution_requests_requester_id",
    ):
        op.drop_index(index_name, table_name="substitution_requests")
    op.drop_table("substitution_requests")

    op.drop_index("ix_enrollments_status", table_name="enrollments")
    op.drop_index("ix_enrollments_template_id", table_name="enrollments")
    op.drop_index("ix_enrollments_student_id", table_name="enrollments")
    op.drop_table("enrollments")

    for index_name in (
        "ix_meetings_template_id",
        "ix_meetings_status",
        "ix_meetings_start_at",
        "ix_meetings_subject",
        "ix_meetings_tutor_id",
    ):
        op.drop_index(index_name, table_name="meetings")
    op.drop_table("meetings")

    op.drop_index("ix_meeting_templates_status", table_name="meeting_templates")
    op.drop_index("ix_meeting_templates_subject", table_name="meeting_templates")
    op.drop_index("ix_meeting_templates_tutor_id", table_name="meeting_templates")
    op.drop_table("meeting_templates")

    bind = op.get_bind()
    for enum_type in (
        request_status_enum,
        request_kind_enum,
        enrollment_status_enum,
        meeting_status_enum,
        template_status_enum,
        weekday_enum,
    ):
        enum_type.drop(bind, checkfirst=True)

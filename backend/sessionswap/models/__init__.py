from sessionswap.models.activity_log import ActivityLog  # noqa: F401
from sessionswap.models.enrollment import Enrollment, EnrollmentStatus  # noqa: F401
from sessionswap.models.meeting import Meeting, MeetingStatus  # noqa: F401
from sessionswap.models.meeting_template import MeetingTemplate, TemplateStatus, Weekday  # noqa: F401
from sessionswap.models.substitution_request import (  # noqa: F401
    TERMINAL_REQUEST_STATUSES,
    RequestKind,
    RequestStatus,
    SubstitutionRequest,
)

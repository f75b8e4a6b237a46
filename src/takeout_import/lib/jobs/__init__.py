"""Worker import job domain: records, state machine, timeline and errors.

Public API:
    - ImportJobRecord / ImportProgress / WebhookPayload / ImportWorkload
    - JobStatus / ProgressPhase
    - append_event / ActivityEvent / ActivityKind
    - advance / transition / forward_path
    - ConfigurationError / AuthenticationError / NotFoundError / CleanupError
"""

from takeout_import.lib.jobs.errors import (
    AuthenticationError,
    CleanupError,
    ConfigurationError,
    ImportJobError,
    InvalidTransitionError,
    NotFoundError,
)
from takeout_import.lib.jobs.models import (
    ImportJobRecord,
    ImportProgress,
    ImportWorkload,
    JobStatus,
    ProgressPhase,
    WebhookPayload,
    WorkerProgress,
)
from takeout_import.lib.jobs.state import (
    TERMINAL_STATUSES,
    advance,
    can_transition,
    forward_path,
    is_terminal,
    status_for_phase,
    transition,
)
from takeout_import.lib.jobs.timeline import MAX_TIMELINE_EVENTS, ActivityEvent, ActivityKind, append_event

__all__ = [
    "MAX_TIMELINE_EVENTS",
    "TERMINAL_STATUSES",
    "ActivityEvent",
    "ActivityKind",
    "AuthenticationError",
    "CleanupError",
    "ConfigurationError",
    "ImportJobError",
    "ImportJobRecord",
    "ImportProgress",
    "ImportWorkload",
    "InvalidTransitionError",
    "JobStatus",
    "NotFoundError",
    "ProgressPhase",
    "WebhookPayload",
    "WorkerProgress",
    "advance",
    "append_event",
    "can_transition",
    "forward_path",
    "is_terminal",
    "status_for_phase",
    "transition",
]

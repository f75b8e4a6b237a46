"""Bounded activity timeline shown to the user while an import runs."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

MAX_TIMELINE_EVENTS = 100


class ActivityKind(StrEnum):
    """Visual category of a timeline entry."""

    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    ALBUM = "album"


class ActivityEvent(BaseModel):
    """One human-readable timeline entry."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    kind: ActivityKind
    message: str


def append_event(
    events: list[ActivityEvent],
    kind: ActivityKind,
    message: str,
    *,
    now: datetime | None = None,
    limit: int = MAX_TIMELINE_EVENTS,
) -> ActivityEvent:
    """Append an event and drop the oldest entries beyond ``limit``.

    The list is modified in place, so after any number of insertions it
    holds exactly the most recent ``limit`` events, oldest first.

    Args:
        events: The timeline to append to.
        kind: Event category.
        message: Text shown to the user.
        now: Event timestamp (defaults to the current UTC time).
        limit: Maximum number of retained events.

    Returns:
        The appended event.
    """
    event = ActivityEvent(timestamp=now or datetime.now(UTC), kind=kind, message=message)
    events.append(event)
    overflow = len(events) - limit
    if overflow > 0:
        del events[:overflow]
    return event

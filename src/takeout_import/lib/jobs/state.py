"""Job status state machine.

Main chain::

    pending -> creating -> downloading -> processing -> complete -> cleanup

``failed`` is reachable from every non-terminal status and leads to
``cleanup``.  Nothing ever moves backwards.
"""

from datetime import datetime

from takeout_import.lib.jobs.errors import InvalidTransitionError
from takeout_import.lib.jobs.models import ImportJobRecord, JobStatus, ProgressPhase

_MAIN_CHAIN: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.CREATING,
    JobStatus.DOWNLOADING,
    JobStatus.PROCESSING,
    JobStatus.COMPLETE,
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.CREATING, JobStatus.FAILED}),
    JobStatus.CREATING: frozenset({JobStatus.DOWNLOADING, JobStatus.FAILED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset({JobStatus.CLEANUP}),
    JobStatus.FAILED: frozenset({JobStatus.CLEANUP}),
    JobStatus.CLEANUP: frozenset(),
}

# Statuses after which the worker is done (or was never started)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CLEANUP})

_PHASE_TO_STATUS: dict[ProgressPhase, JobStatus] = {
    ProgressPhase.DOWNLOADING: JobStatus.DOWNLOADING,
    ProgressPhase.PROCESSING: JobStatus.PROCESSING,
    ProgressPhase.COMPLETE: JobStatus.COMPLETE,
    ProgressPhase.FAILED: JobStatus.FAILED,
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def status_for_phase(phase: ProgressPhase) -> JobStatus:
    """Map a worker-reported phase to the job status it implies."""
    return _PHASE_TO_STATUS[phase]


def forward_path(current: JobStatus, target: JobStatus) -> list[JobStatus]:
    """Statuses to pass through, in order, to move from ``current`` to ``target``.

    Returns an empty list when ``target`` is not ahead of ``current`` (a stale
    or duplicate update).  A jump along the main chain is expanded into
    every intermediate status so no state is skipped; ``failed`` is a single
    step from any non-terminal status.
    """
    if current == target or is_terminal(current):
        return []
    if target == JobStatus.FAILED:
        return [JobStatus.FAILED]
    if current not in _MAIN_CHAIN or target not in _MAIN_CHAIN:
        return []
    start = _MAIN_CHAIN.index(current)
    end = _MAIN_CHAIN.index(target)
    if end <= start:
        return []
    return list(_MAIN_CHAIN[start + 1 : end + 1])


def transition(record: ImportJobRecord, target: JobStatus, *, now: datetime | None = None) -> None:
    """Move ``record`` to ``target``.

    Raises:
        InvalidTransitionError: If the state machine does not allow the move.
    """
    if not can_transition(record.status, target):
        raise InvalidTransitionError(record.status, target)
    record.status = target
    record.touch(now)


def advance(record: ImportJobRecord, target: JobStatus, *, now: datetime | None = None) -> list[JobStatus]:
    """Walk ``record`` forward to ``target`` through every intermediate status.

    Returns:
        The statuses entered, in order (empty when the update is stale).
    """
    path = forward_path(record.status, target)
    for step in path:
        transition(record, step, now=now)
    return path

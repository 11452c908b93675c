# src/engine/states.py
"""
Job lifecycle state machine.

    pending -> queued -> running -> completed
                                 -> failed
    pending / queued / running -> cancelled

completed, failed and cancelled are terminal. Transitions are validated before
the job record is touched, so a rejected transition never leaves a partial
update behind.
"""
import traceback
from datetime import datetime
from enum import Enum

from engine.config import MAX_LOG_ENTRIES
from engine.errors import InvalidTransitionError

MAX_LOG_MESSAGE = 1000


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING})

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_terminal(status) -> bool:
    return JobStatus(status) in TERMINAL_STATES


def can_transition(current, target) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def check_transition(job, target):
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.job_id, str(job.status), str(JobStatus(target)))


def append_log(job, level: str, message: str, metadata: dict = None, now: datetime = None,
               max_entries: int = MAX_LOG_ENTRIES):
    """Append one entry to the job's bounded log, dropping the oldest entries."""
    entry = {
        "level": level,
        "message": message[:MAX_LOG_MESSAGE],
        "timestamp": (now or datetime.utcnow()).isoformat(),
        "metadata": metadata or {},
    }
    # reassign so the JSON column is flagged dirty
    job.log = (list(job.log or []) + [entry])[-max_entries:]
    return entry


def error_context(error: BaseException) -> dict:
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return {
        "error": str(error),
        "kind": getattr(error, "kind", "internal"),
        "retryable": bool(getattr(error, "retryable", False)),
        "stack": stack[-4000:],
    }


def apply_transition(job, target, error: BaseException = None, now: datetime = None):
    """
    Move `job` to `target`, stamping timestamps and writing exactly one log entry.
    Raises InvalidTransitionError without modifying the job if the move is not allowed.
    """
    target = JobStatus(target)
    check_transition(job, target)
    now = now or datetime.utcnow()

    job.status = target.value
    if target == JobStatus.RUNNING:
        job.started_at = now
    elif target in TERMINAL_STATES:
        job.finished_at = now
        job.elapsed_seconds = (now - job.started_at).total_seconds() if job.started_at else 0.0
        summary = dict(job.summary or {})
        summary["elapsed_seconds"] = job.elapsed_seconds
        job.summary = summary

    if error is not None:
        context = error_context(error)
        job.error = context["error"]
        job.error_kind = context["kind"]
        append_log(job, "error", f"Status changed to {target}: {error}", context, now=now)
    else:
        append_log(job, "info", f"Status changed to {target}", now=now)
    return job

# src/engine/errors.py
"""
Error taxonomy for scan jobs.

Every pipeline failure is a ScanError subclass. `kind` is stored on the job so
calling layers can classify a failure, and `retryable` tells them whether
offering a rerun makes sense.
"""


class ScanError(Exception):
    kind = "internal"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"kind": self.kind, "error": self.message, **self.details}


class ValidationError(ScanError):
    """Bad job request; the job is never created."""
    kind = "validation"


class JobNotFoundError(ScanError):
    kind = "not_found"


class InvalidTransitionError(ScanError):
    kind = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Cannot transition job {job_id} from {current} to {target}",
            job_id=job_id, current=current, target=target,
        )
        self.current = current
        self.target = target


class FetchError(ScanError):
    kind = "fetch"

    AUTH = "auth"
    MISSING_REF = "missing_ref"
    NETWORK = "network"
    UNKNOWN = "unknown"

    def __init__(self, message: str, reason: str = UNKNOWN):
        super().__init__(message, reason=reason)
        self.reason = reason

    @property
    def retryable(self):
        return self.reason == self.NETWORK


class RuleResolutionError(ScanError):
    kind = "rule_resolution"


class ToolExecutionError(ScanError):
    kind = "tool_execution"
    retryable = True

    def __init__(self, message: str, exit_code=None, stderr: str = ""):
        super().__init__(message, exit_code=exit_code)
        self.exit_code = exit_code
        self.stderr = stderr


class ToolTimeoutError(ScanError):
    kind = "timeout"
    retryable = True

    def __init__(self, message: str, timeout: float):
        super().__init__(message, timeout=timeout)
        self.timeout = timeout


class ParseError(ScanError):
    kind = "parse"


class PersistenceError(ScanError):
    kind = "persistence"
    retryable = True


class JobCancelled(Exception):
    """Raised inside a pipeline once its cancel token has fired. Not a failure."""

    def __init__(self, job_id: str = None):
        super().__init__(f"Job {job_id} was cancelled" if job_id else "Job was cancelled")
        self.job_id = job_id


class InterruptedByRestart(ScanError):
    kind = "interrupted"
    retryable = True

    def __init__(self, message: str = "Interrupted by restart"):
        super().__init__(message)

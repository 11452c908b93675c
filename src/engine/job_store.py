# src/engine/job_store.py
"""
JobStore: durable job/result records on SQLAlchemy.

Every write loads a fresh row, mutates it and commits under the row's version
counter, so two writers racing on the same job cannot silently overwrite each
other: the loser reloads and re-validates (a transition that is no longer legal
then fails with InvalidTransitionError). Transient database errors are retried
with exponential backoff before surfacing as PersistenceError.
"""
import functools
import logging
import uuid
from datetime import datetime
from statistics import mean

from sqlalchemy import case
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from engine.config import PERSISTENCE_BACKOFF, PERSISTENCE_RETRIES
from engine.errors import InvalidTransitionError, JobNotFoundError, PersistenceError, ValidationError
from engine.models import Project, ScanJob, ScanResult
from engine.states import ACTIVE_STATES, JobStatus, append_log, apply_transition

MAX_VERSION_CONFLICTS = 5
SEVERITY_ORDER = case({"ERROR": 3, "WARNING": 2, "INFO": 1}, value=ScanResult.severity, else_=0)


def _log_retry(retry_state):
    logging.warning(
        f"Transient store error in {retry_state.fn.__name__} "
        f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
    )


def retry_transient(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        retrying = Retrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return retrying(method, self, *args, **kwargs)
        except OperationalError as e:
            raise PersistenceError(f"{method.__name__} failed after {self.max_retries} attempts: {e}") from e
        except StaleDataError as e:
            raise PersistenceError(f"{method.__name__} lost a concurrent update: {e}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"{method.__name__} failed: {e}") from e
    return wrapper


class JobStore:
    def __init__(self, session_factory, max_retries: int = PERSISTENCE_RETRIES,
                 backoff: float = PERSISTENCE_BACKOFF):
        self._session_factory = session_factory
        self.max_retries = max(1, max_retries)
        self.backoff = backoff

    # jobs

    @retry_transient
    def create_job(self, **fields) -> ScanJob:
        with self._session_factory() as db:
            job = ScanJob(job_id=str(uuid.uuid4()), status=JobStatus.PENDING.value, log=[], **fields)
            append_log(job, "info", "Scan job created")
            db.add(job)
            db.commit()
            logging.info(f"[job_id={job.job_id}] Created scan job. project_id={job.project_id} priority={job.priority}")
            return job

    @retry_transient
    def get_job(self, job_id: str):
        with self._session_factory() as db:
            return db.query(ScanJob).filter(ScanJob.job_id == job_id).first()

    def load_job(self, job_id: str) -> ScanJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Scan job {job_id} not found", job_id=job_id)
        return job

    def _update(self, job_id: str, mutate) -> ScanJob:
        for _ in range(MAX_VERSION_CONFLICTS):
            with self._session_factory() as db:
                job = db.query(ScanJob).filter(ScanJob.job_id == job_id).first()
                if job is None:
                    raise JobNotFoundError(f"Scan job {job_id} not found", job_id=job_id)
                mutate(job)
                try:
                    db.commit()
                    return job
                except StaleDataError:
                    db.rollback()
                    logging.info(f"[job_id={job_id}] Concurrent update detected, reloading")
        raise PersistenceError(f"Job {job_id} kept changing underneath {MAX_VERSION_CONFLICTS} update attempts")

    @retry_transient
    def transition(self, job_id: str, status, error: BaseException = None, expected=None) -> ScanJob:
        """
        Apply a state-machine transition against the stored row. `expected` optionally
        restricts the statuses the job may currently be in.
        """
        def mutate(job):
            if expected is not None and JobStatus(job.status) not in expected:
                raise InvalidTransitionError(job.job_id, job.status, str(JobStatus(status)))
            apply_transition(job, status, error)

        job = self._update(job_id, mutate)
        logging.info(f"[job_id={job_id}] Status changed to {job.status}")
        return job

    @retry_transient
    def append_log(self, job_id: str, level: str, message: str, metadata: dict = None) -> ScanJob:
        return self._update(job_id, lambda job: append_log(job, level, message, metadata))

    @retry_transient
    def persist_summary(self, job_id: str, summary: dict) -> ScanJob:
        def mutate(job):
            job.summary = {**(job.summary or {}), **summary}
        return self._update(job_id, mutate)

    @retry_transient
    def update_repository_info(self, job_id: str, repository_info: dict, commit_sha: str = None,
                               commit_message: str = None) -> ScanJob:
        def mutate(job):
            job.repository_info = dict(repository_info)
            job.commit_sha = job.commit_sha or commit_sha
            job.commit_message = job.commit_message or commit_message
        return self._update(job_id, mutate)

    @retry_transient
    def find_active_jobs(self):
        with self._session_factory() as db:
            return (
                db.query(ScanJob)
                .filter(ScanJob.status.in_([s.value for s in ACTIVE_STATES]))
                .order_by(ScanJob.priority.desc(), ScanJob.created_at.asc())
                .all()
            )

    @retry_transient
    def find_stale_working_directories(self, workspace):
        """Working directories whose job is not currently running."""
        with self._session_factory() as db:
            running = {
                row.job_id for row in
                db.query(ScanJob.job_id).filter(ScanJob.status == JobStatus.RUNNING.value).all()
            }
        return [path for job_id, path in workspace.job_directories() if job_id not in running]

    @retry_transient
    def job_history(self, project_id: str = None, status: str = None, limit: int = 20, offset: int = 0):
        with self._session_factory() as db:
            query = db.query(ScanJob)
            if project_id:
                query = query.filter(ScanJob.project_id == project_id)
            if status:
                query = query.filter(ScanJob.status == status)
            return query.order_by(ScanJob.created_at.desc()).offset(offset).limit(limit).all()

    @retry_transient
    def statistics(self, project_id: str = None, date_from: datetime = None, date_to: datetime = None):
        with self._session_factory() as db:
            query = db.query(ScanJob.status, ScanJob.elapsed_seconds, ScanJob.summary)
            if project_id:
                query = query.filter(ScanJob.project_id == project_id)
            if date_from:
                query = query.filter(ScanJob.created_at >= date_from)
            if date_to:
                query = query.filter(ScanJob.created_at <= date_to)
            rows = query.all()
        grouped = {}
        for status, elapsed, summary in rows:
            grouped.setdefault(status, []).append((elapsed or 0.0, (summary or {}).get("total_findings", 0)))
        return {
            status: {
                "count": len(items),
                "avg_duration_seconds": mean(e for e, _ in items),
                "total_findings": sum(f for _, f in items),
            }
            for status, items in grouped.items()
        }

    @retry_transient
    def delete_job(self, job_id: str):
        with self._session_factory() as db:
            job = db.query(ScanJob).filter(ScanJob.job_id == job_id).first()
            if job is None:
                raise JobNotFoundError(f"Scan job {job_id} not found", job_id=job_id)
            if job.is_active:
                raise ValidationError(f"Cannot delete job {job_id} while it is {job.status}")
            db.delete(job)
            db.commit()

    @retry_transient
    def purge_jobs(self, before: datetime, statuses=(JobStatus.COMPLETED,)) -> int:
        with self._session_factory() as db:
            jobs = (
                db.query(ScanJob)
                .filter(ScanJob.created_at < before)
                .filter(ScanJob.status.in_([JobStatus(s).value for s in statuses]))
                .all()
            )
            for job in jobs:
                db.delete(job)
            db.commit()
            return len(jobs)

    # results

    @retry_transient
    def save_results(self, job_id: str, results) -> int:
        """Replace the job's result set in a single transaction."""
        with self._session_factory() as db:
            db.query(ScanResult).filter(ScanResult.job_id == job_id).delete(synchronize_session=False)
            db.add_all(results)
            db.commit()
            return len(results)

    @retry_transient
    def discard_results(self, job_id: str) -> int:
        """Drop a job's results together with the finding counts derived from them."""
        with self._session_factory() as db:
            removed = db.query(ScanResult).filter(ScanResult.job_id == job_id).delete(synchronize_session=False)
            db.commit()

        def mutate(job):
            job.summary = {k: v for k, v in (job.summary or {}).items() if k == "elapsed_seconds"}

        if removed:
            self._update(job_id, mutate)
        return removed

    @retry_transient
    def list_results(self, job_id: str, severity: str = None, category: str = None, status: str = None,
                     include_duplicates: bool = True, limit: int = 100, offset: int = 0):
        with self._session_factory() as db:
            query = db.query(ScanResult).filter(ScanResult.job_id == job_id)
            if severity:
                query = query.filter(ScanResult.severity == severity.upper())
            if category:
                query = query.filter(ScanResult.category == category)
            if status:
                query = query.filter(ScanResult.status == status)
            if not include_duplicates:
                query = query.filter(ScanResult.duplicate_of.is_(None))
            return (
                query.order_by(SEVERITY_ORDER.desc(), ScanResult.line_start.asc(), ScanResult.position.asc())
                .offset(offset)
                .limit(limit)
                .all()
            )

    @retry_transient
    def count_results(self, job_id: str) -> int:
        with self._session_factory() as db:
            return db.query(ScanResult).filter(ScanResult.job_id == job_id).count()

    @retry_transient
    def update_triage(self, result_id: str, status: str, reason: str = None, triaged_by: str = None,
                      notes: str = None) -> ScanResult:
        with self._session_factory() as db:
            result = db.query(ScanResult).filter(ScanResult.result_id == result_id).first()
            if result is None:
                raise JobNotFoundError(f"Scan result {result_id} not found", result_id=result_id)
            result.status = status
            result.triage_reason = reason
            result.triaged_by = triaged_by
            result.triage_notes = notes
            result.triaged_at = datetime.utcnow()
            db.commit()
            return result

    # projects

    @retry_transient
    def create_project(self, **fields) -> Project:
        with self._session_factory() as db:
            project = Project(project_id=fields.pop("project_id", None) or str(uuid.uuid4()), **fields)
            db.add(project)
            db.commit()
            return project

    @retry_transient
    def get_project(self, project_id: str):
        with self._session_factory() as db:
            return db.query(Project).filter(Project.project_id == project_id).first()

    @retry_transient
    def record_project_scan(self, project_id: str, status: str, at: datetime = None):
        with self._session_factory() as db:
            project = db.query(Project).filter(Project.project_id == project_id).first()
            if project is None:
                return
            project.total_scans = (project.total_scans or 0) + 1
            project.last_scan_at = at or datetime.utcnow()
            project.last_scan_status = status
            db.commit()


# src/engine/job_manager.py
"""
JobManager: the operations exposed to callers (HTTP routes, CLI, tests).

Validates and records scan requests, hands them to the Scheduler, and answers
status/result queries from the job store. `startup()` runs crash recovery before
the scheduler starts dispatching.
"""
import logging
import re
from datetime import datetime, timedelta

from engine.config import (
    DEFAULT_PRIORITY, JOB_RETENTION_DAYS, MAX_CONCURRENT_JOBS, MAX_FILE_SIZE_KB, MAX_SCAN_TIMEOUT,
    RERUN_WINDOW_DAYS, RULES_PATH, SEMGREP_TIMEOUT, WORKSPACE_ROOT,
)
from engine.db import SessionLocal, engine, init_db
from engine.errors import InterruptedByRestart, InvalidTransitionError, RuleResolutionError, ScanError, ValidationError
from engine.job_store import JobStore
from engine.notifier import notifier_from_config
from engine.result_processor import ResultProcessor
from engine.rulesets import RuleSetResolver
from engine.scan_service import ScanService
from engine.scheduler import Scheduler
from engine.source_fetcher import SourceFetcher
from engine.states import TERMINAL_STATES, JobStatus, is_terminal
from engine.workspace import WorkspaceManager
from tools.semgrep_adapter import SemgrepAdapter

COMMIT_SHA_PATTERN = re.compile(r"^[0-9a-fA-F]{7,40}$")
TRIGGER_SOURCES = ("manual", "webhook", "scheduled", "api", "upload")
TRIAGE_STATUSES = ("open", "false_positive", "fixed", "ignored", "wont_fix")
MIN_PRIORITY, MAX_PRIORITY = 1, 10


def job_to_dict(job, results_count: int = None) -> dict:
    return {
        "job_id": job.job_id,
        "project_id": job.project_id,
        "status": job.status,
        "priority": job.priority,
        "trigger": {
            "source": job.trigger_source,
            "event": job.trigger_event,
            "repo_url": job.repo_url,
            "branch": job.branch,
            "commit_sha": job.commit_sha,
            "commit_message": job.commit_message,
            "pull_request": job.pull_request,
            "metadata": job.trigger_metadata or {},
        },
        "ruleset": job.ruleset or [],
        "scan_config": job.scan_config or {},
        "repository_info": job.repository_info,
        "summary": job.summary,
        "error": job.error,
        "error_kind": job.error_kind,
        "is_active": job.is_active,
        "can_retry": can_retry(job),
        "results_count": results_count,
        "created_at": str(job.created_at),
        "started_at": str(job.started_at) if job.started_at else None,
        "finished_at": str(job.finished_at) if job.finished_at else None,
        "elapsed_seconds": job.elapsed_seconds or 0.0,
    }


def result_to_dict(result) -> dict:
    return {
        "result_id": result.result_id,
        "job_id": result.job_id,
        "rule_id": result.rule_id,
        "file_path": result.file_path,
        "line_start": result.line_start,
        "line_end": result.line_end,
        "line_range": result.line_range,
        "column_start": result.column_start,
        "column_end": result.column_end,
        "severity": result.severity,
        "severity_score": result.severity_score,
        "risk_score": result.risk_score,
        "is_security_issue": result.is_security_issue,
        "category": result.category,
        "message": result.message,
        "code_snippet": result.code_snippet,
        "fix_suggestion": result.fix_suggestion,
        "metadata": result.result_metadata or {},
        "fingerprint": result.fingerprint,
        "status": result.status,
        "triage_reason": result.triage_reason,
        "triaged_by": result.triaged_by,
        "triaged_at": str(result.triaged_at) if result.triaged_at else None,
        "triage_notes": result.triage_notes,
        "duplicate_of": result.duplicate_of,
    }


def can_retry(job, now: datetime = None, window_days: int = RERUN_WINDOW_DAYS) -> bool:
    if JobStatus(job.status) not in TERMINAL_STATES or job.created_at is None:
        return False
    return (now or datetime.utcnow()) - job.created_at < timedelta(days=window_days)


class JobManager:
    def __init__(self, store, resolver, workspace, scheduler, rules_path: str = RULES_PATH, runner=None):
        self.store = store
        self.resolver = resolver
        self.workspace = workspace
        self.scheduler = scheduler
        self.rules_path = rules_path
        self.runner = runner

    @classmethod
    def from_config(cls, session_factory=None, workspace_root: str = WORKSPACE_ROOT,
                    max_concurrent: int = MAX_CONCURRENT_JOBS, runner=None, fetcher=None, notifier=None,
                    rules_path: str = RULES_PATH):
        """Wire the default components: SQLAlchemy store, git fetcher, semgrep runner."""
        if session_factory is None:
            init_db(engine)
            session_factory = SessionLocal
        store = JobStore(session_factory)
        resolver = RuleSetResolver(session_factory)
        workspace = WorkspaceManager(workspace_root)
        service = ScanService(
            store=store,
            workspace=workspace,
            fetcher=fetcher or SourceFetcher(),
            resolver=resolver,
            runner=runner or SemgrepAdapter(),
            processor=ResultProcessor(store),
            notifier=notifier or notifier_from_config(),
        )
        scheduler = Scheduler(store, service.execute, max_concurrent=max_concurrent)
        return cls(store, resolver, workspace, scheduler, rules_path=rules_path, runner=service.runner)

    # lifecycle

    def startup(self):
        """Recover from a previous run, then start dispatching."""
        self.workspace.ensure_root()
        if self.runner is not None:
            engine_info = self.runner.check_installation()
            if engine_info["installed"]:
                logging.info(f"Analysis engine available: {engine_info['version']}")
            else:
                logging.warning(f"Analysis engine not available: {engine_info['error']}")
        if self.rules_path:
            self.resolver.load_rules_file(self.rules_path, source="default")

        interrupted, resubmitted = 0, 0
        for job in self.store.find_active_jobs():
            if job.status == JobStatus.RUNNING.value:
                # no pipeline survives a restart
                try:
                    self.store.transition(job.job_id, JobStatus.FAILED, error=InterruptedByRestart())
                    interrupted += 1
                except InvalidTransitionError as e:
                    logging.info(f"[job_id={job.job_id}] Skipping recovery: {e}")
            else:
                if self.scheduler.submit(job.job_id):
                    resubmitted += 1

        swept = 0
        for path in self.store.find_stale_working_directories(self.workspace):
            if self.workspace.remove(path):
                swept += 1
        logging.info(
            f"Recovery complete: {interrupted} interrupted, {resubmitted} resubmitted, "
            f"{swept} stale working directories removed"
        )
        self.scheduler.start()

    def shutdown(self, timeout: float = None):
        self.scheduler.shutdown(cancel_running=True, timeout=timeout)

    # submission

    def _validate_scan_config(self, scan_config: dict) -> dict:
        config = {
            "include_paths": [],
            "exclude_paths": [],
            "max_file_size_kb": MAX_FILE_SIZE_KB,
            "timeout_seconds": SEMGREP_TIMEOUT,
        }
        config.update({k: v for k, v in (scan_config or {}).items() if v is not None and k != "rules"})

        for key in ("include_paths", "exclude_paths"):
            value = config[key]
            if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
                raise ValidationError(f"{key} must be a list of path patterns", field=key)
        for key, upper in (("timeout_seconds", MAX_SCAN_TIMEOUT), ("max_file_size_kb", None)):
            value = config[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValidationError(f"{key} must be a positive integer", field=key)
            if upper is not None and value > upper:
                raise ValidationError(f"{key} must not exceed {upper}", field=key)
        return config

    def _resolve_ruleset(self, rule_ids, project, languages):
        if not rule_ids and project is not None:
            rule_ids = (project.scan_config or {}).get("rules")
        if not languages and project is not None:
            languages = project.languages
        try:
            rules = self.resolver.resolve(rule_ids=rule_ids or None, languages=languages or None)
        except RuleResolutionError as e:
            raise ValidationError(str(e), **e.details) from e
        return [rule.rule_id for rule in rules]

    def submit_job(self, project_id: str = None, trigger: dict = None, scan_config: dict = None,
                   priority: int = None, rule_ids=None) -> str:
        """
        Validate a scan request, record it as a pending job and queue it.
        Raises ValidationError without creating anything if the request is unusable.
        """
        trigger = dict(trigger or {})
        project = None
        if project_id:
            project = self.store.get_project(project_id)
            if project is None:
                raise ValidationError(f"Project {project_id} not found", project_id=project_id)

        repo_url = trigger.get("repo_url") or (project.repo_url if project else None)
        if not repo_url:
            raise ValidationError("A repository URL is required", field="repo_url")
        branch = trigger.get("branch") or (project.branch if project else None) or "main"

        commit_sha = trigger.get("commit_sha")
        if commit_sha and not COMMIT_SHA_PATTERN.match(commit_sha):
            raise ValidationError("commit_sha must be 7 to 40 hex characters", field="commit_sha")

        source = trigger.get("source") or "manual"
        if source not in TRIGGER_SOURCES:
            raise ValidationError(f"Unknown trigger source: {source}", field="source")

        priority = DEFAULT_PRIORITY if priority is None else priority
        if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}", field="priority")

        pr_number = trigger.get("pr_number")
        if pr_number is not None and (isinstance(pr_number, bool) or not isinstance(pr_number, int)):
            raise ValidationError("pr_number must be an integer", field="pr_number")

        base_config = dict(project.scan_config or {}) if project else {}
        base_config.update(scan_config or {})
        config = self._validate_scan_config(base_config)
        ruleset = self._resolve_ruleset(rule_ids, project, trigger.get("languages"))

        job = self.store.create_job(
            project_id=project.project_id if project else None,
            priority=priority,
            trigger_source=source,
            trigger_event=trigger.get("event") or "manual_trigger",
            repo_url=repo_url,
            branch=branch,
            commit_sha=commit_sha.lower() if commit_sha else None,
            commit_message=trigger.get("commit_message"),
            pr_number=pr_number,
            pr_title=trigger.get("pr_title"),
            pr_author=trigger.get("pr_author"),
            trigger_metadata=dict(trigger.get("metadata") or {}),
            ruleset=ruleset,
            scan_config=config,
        )
        self.scheduler.submit(job.job_id)
        logging.info(f"[job_id={job.job_id}] Submitted scan job. repo={repo_url} branch={branch} rules={len(ruleset)}")
        return job.job_id

    def rerun_job(self, job_id: str, overrides: dict = None) -> str:
        """Queue a fresh job with the configuration of a finished one."""
        original = self.store.load_job(job_id)
        if not can_retry(original):
            raise ValidationError(
                f"Scan {job_id} cannot be rerun (too old or invalid status)",
                job_id=job_id, status=original.status,
            )
        overrides = dict(overrides or {})
        trigger = {
            "source": original.trigger_source,
            "event": "rerun",
            "repo_url": original.repo_url,
            "branch": overrides.get("branch") or original.branch,
            "commit_sha": overrides.get("commit_sha") or original.commit_sha,
            "pr_number": original.pr_number,
            "pr_title": original.pr_title,
            "pr_author": original.pr_author,
            "metadata": {
                "rerun_of": original.job_id,
                "triggered_by": overrides.get("triggered_by") or "api",
                "trigger_reason": "Scan rerun requested",
            },
        }
        scan_config = {**(original.scan_config or {}), **(overrides.get("scan_config") or {})}
        return self.submit_job(
            project_id=original.project_id,
            trigger=trigger,
            scan_config=scan_config,
            priority=overrides.get("priority") or original.priority,
            rule_ids=overrides.get("rule_ids") or original.ruleset,
        )

    # cancellation

    def cancel_job(self, job_id: str) -> dict:
        job = self.store.load_job(job_id)
        if is_terminal(job.status):
            raise InvalidTransitionError(job_id, job.status, JobStatus.CANCELLED.value)
        self.scheduler.cancel(job_id)
        self.store.append_log(job_id, "info", "Scan cancelled by user request")
        return self.get_job_status(job_id)

    def bulk_cancel(self, job_ids) -> dict:
        cancelled, failed = [], []
        for job_id in dict.fromkeys(job_ids):
            try:
                self.cancel_job(job_id)
                cancelled.append(job_id)
            except ScanError as e:
                failed.append({"job_id": job_id, **e.to_dict()})
        return {"cancelled": cancelled, "failed": failed}

    # queries

    def get_job_status(self, job_id: str) -> dict:
        job = self.store.load_job(job_id)
        return job_to_dict(job, results_count=self.store.count_results(job_id))

    def get_results(self, job_id: str, severity: str = None, category: str = None, status: str = None,
                    include_duplicates: bool = True, limit: int = 100, offset: int = 0) -> dict:
        self.store.load_job(job_id)
        results = self.store.list_results(
            job_id, severity=severity, category=category, status=status,
            include_duplicates=include_duplicates, limit=limit, offset=offset,
        )
        return {
            "job_id": job_id,
            "total": self.store.count_results(job_id),
            "limit": limit,
            "offset": offset,
            "results": [result_to_dict(r) for r in results],
        }

    def get_job_logs(self, job_id: str, level: str = None, limit: int = None) -> list:
        job = self.store.load_job(job_id)
        entries = [e for e in job.log or [] if level is None or e.get("level") == level]
        if limit:
            entries = entries[-limit:]
        return entries

    def job_history(self, project_id: str = None, status: str = None, limit: int = 20, offset: int = 0) -> list:
        if status is not None and status not in [s.value for s in JobStatus]:
            raise ValidationError(f"Unknown job status: {status}", field="status")
        jobs = self.store.job_history(project_id=project_id, status=status, limit=limit, offset=offset)
        return [job_to_dict(job) for job in jobs]

    def statistics(self, project_id: str = None, date_from: datetime = None, date_to: datetime = None) -> dict:
        by_status = self.store.statistics(project_id=project_id, date_from=date_from, date_to=date_to)
        return {
            "total_jobs": sum(item["count"] for item in by_status.values()),
            "by_status": by_status,
            "scheduler": self.scheduler.stats(),
        }

    # maintenance

    def update_triage(self, result_id: str, status: str, reason: str = None, triaged_by: str = None,
                      notes: str = None) -> dict:
        if status not in TRIAGE_STATUSES:
            raise ValidationError(f"Unknown triage status: {status}", field="status")
        result = self.store.update_triage(result_id, status, reason=reason, triaged_by=triaged_by, notes=notes)
        logging.info(f"[job_id={result.job_id}] Result {result_id} triaged as {status}")
        return result_to_dict(result)

    def delete_job(self, job_id: str):
        self.store.delete_job(job_id)
        for path in self.workspace.directories_for(job_id):
            self.workspace.remove(path)
        logging.info(f"[job_id={job_id}] Deleted scan job and its results")

    def purge_old_jobs(self, days: int = JOB_RETENTION_DAYS, statuses=tuple(TERMINAL_STATES)) -> int:
        if days < 1:
            raise ValidationError("days must be at least 1", field="days")
        cutoff = datetime.utcnow() - timedelta(days=days)
        count = self.store.purge_jobs(cutoff, statuses=statuses)
        logging.info(f"Purged {count} scan jobs created before {cutoff.isoformat()}")
        return count

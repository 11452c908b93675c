# src/engine/scan_service.py
"""
ScanService: the pipeline for a single scan job.

fetch source -> resolve rules -> run semgrep -> ingest results, with a
cancellation checkpoint before every stage. Any stage error fails the job; the
working directory is removed on every exit path.
"""
import logging

from engine.errors import InvalidTransitionError, JobCancelled, PersistenceError, ScanError
from engine.source_fetcher import RepoRef
from engine.states import JobStatus
from tools.base import ScanOptions


class ScanService:
    def __init__(self, store, workspace, fetcher, resolver, runner, processor, notifier=None):
        self.store = store
        self.workspace = workspace
        self.fetcher = fetcher
        self.resolver = resolver
        self.runner = runner
        self.processor = processor
        self.notifier = notifier

    def execute(self, job_id: str, cancel_token):
        try:
            summary = self._run_stages(job_id, cancel_token)
        except JobCancelled:
            self._finish_cancelled(job_id)
            return
        except ScanError as e:
            if cancel_token.cancelled:
                # killing the subprocess surfaces as a tool error; the cancel wins
                self._finish_cancelled(job_id)
            else:
                self._fail(job_id, e)
            return
        except Exception as e:
            logging.exception(f"[job_id={job_id}] Unexpected pipeline error")
            self._fail(job_id, e)
            return

        try:
            job = self.store.transition(job_id, JobStatus.COMPLETED)
        except InvalidTransitionError as e:
            logging.info(f"[job_id={job_id}] Not marking completed: {e}")
            return
        self.store.append_log(
            job_id, "info", f"Scan completed successfully with {summary['total_findings']} findings"
        )
        logging.info(f"[job_id={job_id}] Completed scan job. stats={summary}")
        self._after_finish(job)

    def _run_stages(self, job_id: str, cancel_token) -> dict:
        with self.workspace.allocate(job_id) as workdir:
            cancel_token.raise_if_cancelled()
            job = self.store.load_job(job_id)
            self.store.append_log(job_id, "info", "Starting scan execution")

            self.store.append_log(job_id, "info", "Cloning repository...")
            repo_ref = RepoRef(url=job.repo_url, branch=job.branch or "main", commit=job.commit_sha)
            fetched = self.fetcher.fetch(repo_ref, workdir / "repo", cancel_token)
            self.store.update_repository_info(
                job_id,
                fetched.to_repository_info(job.repo_url),
                commit_sha=fetched.resolved_commit,
                commit_message=fetched.commit_message,
            )

            cancel_token.raise_if_cancelled()
            self.store.append_log(job_id, "info", "Preparing scan rules...")
            rules = self.resolver.resolve(rule_ids=job.ruleset)
            config_path = self.resolver.render(rules, workdir / "scan-rules.yml")

            cancel_token.raise_if_cancelled()
            self.store.append_log(job_id, "info", f"Executing semgrep scan with {len(rules)} rules...")
            options = ScanOptions.from_config(job.scan_config)
            run = self.runner.run_scan(config_path, fetched.path, options, cancel_token)

            cancel_token.raise_if_cancelled()
            self.store.append_log(job_id, "info", "Processing findings...")
            summary = self.processor.process(job, run.stdout, rules, fetched.path, cancel_token)

            cancel_token.raise_if_cancelled()
            return summary

    def _fail(self, job_id: str, error: BaseException):
        logging.error(f"[job_id={job_id}] Scan job failed: {error}")
        try:
            job = self.store.transition(job_id, JobStatus.FAILED, error=error)
        except InvalidTransitionError as e:
            logging.info(f"[job_id={job_id}] Not marking failed: {e}")
            return
        except PersistenceError as e:
            # left running; startup recovery will fail it
            logging.error(f"[job_id={job_id}] Could not record failure: {e}")
            return
        self._after_finish(job)

    def _finish_cancelled(self, job_id: str):
        try:
            self.store.transition(job_id, JobStatus.CANCELLED)
        except InvalidTransitionError:
            pass
        try:
            # a cancelled job keeps no findings, even if ingest had already committed them
            if self.store.discard_results(job_id):
                self.store.append_log(job_id, "info", "Discarded results ingested before cancellation")
        except PersistenceError as e:
            logging.error(f"[job_id={job_id}] Could not discard results of cancelled job: {e}")
        logging.info(f"[job_id={job_id}] Scan job cancelled.")

    def _after_finish(self, job):
        if job.project_id:
            try:
                self.store.record_project_scan(job.project_id, job.status, job.finished_at)
            except PersistenceError as e:
                logging.warning(f"[job_id={job.job_id}] Could not update project statistics: {e}")
        if self.notifier is not None:
            external_ref = {
                "job_id": job.job_id,
                "status": job.status,
                "project_id": job.project_id,
                "trigger_source": job.trigger_source,
                "branch": job.branch,
                "commit_sha": job.commit_sha,
                "pull_request": job.pull_request,
            }
            self.notifier.notify_async(external_ref, job.summary or {})

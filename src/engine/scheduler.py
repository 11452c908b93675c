# src/engine/scheduler.py
"""
Scheduler: priority queue of scan jobs feeding at most N concurrent pipelines.

Jobs are dequeued highest priority first, FIFO (by created_at, then submission
order) within a priority. A dispatcher thread takes a slot from a bounded
semaphore, pops the next job and moves it queued -> running while holding the
scheduler lock, so a job can never be handed to two pipelines. The slot is
released only when the whole pipeline has finished.
"""
import heapq
import itertools
import logging
import threading
from datetime import datetime

from engine.cancellation import CancelToken
from engine.config import KILL_GRACE_SECONDS, MAX_CONCURRENT_JOBS
from engine.errors import InvalidTransitionError, JobNotFoundError, PersistenceError
from engine.states import JobStatus

DISPATCH_RETRY_SECONDS = 1.0


class _Execution:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.token = CancelToken(job_id)
        self.done = threading.Event()
        self.thread = None


class Scheduler:
    def __init__(self, store, pipeline, max_concurrent: int = MAX_CONCURRENT_JOBS,
                 cancel_wait: float = KILL_GRACE_SECONDS + 5):
        """
        `pipeline(job_id, cancel_token)` runs one job end to end and is
        responsible for moving it into a terminal state.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.pipeline = pipeline
        self.max_concurrent = max_concurrent
        self.cancel_wait = cancel_wait
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._cond = threading.Condition()
        self._heap = []
        self._queued = set()
        self._running = {}
        self._seq = itertools.count()
        self._stopping = False
        self._dispatcher = None

    # lifecycle

    def start(self):
        with self._cond:
            if self._dispatcher is not None and self._dispatcher.is_alive():
                return
            self._stopping = False
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="scan-dispatcher", daemon=True)
            self._dispatcher.start()
        logging.info(f"Scheduler started with {self.max_concurrent} slots")

    def shutdown(self, cancel_running: bool = True, timeout: float = None):
        """Stop dispatching. Queued jobs stay queued in the store and are picked up on restart."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            executions = list(self._running.values())
        if cancel_running:
            for execution in executions:
                try:
                    self.cancel(execution.job_id, wait=False)
                except InvalidTransitionError:
                    pass
        for execution in executions:
            execution.done.wait(timeout)
        if self._dispatcher is not None:
            # dispatcher may be blocked on a slot; the finished pipelines above released them
            self._dispatcher.join(timeout)
        logging.info("Scheduler stopped")

    # queue operations

    def submit(self, job_id: str) -> bool:
        """
        Enqueue a pending (or already queued) job. Returns False if the job is
        already queued or running here.
        """
        with self._cond:
            if job_id in self._queued or job_id in self._running:
                logging.info(f"[job_id={job_id}] Already in flight, ignoring submit")
                return False
            job = self.store.load_job(job_id)
            if job.status == JobStatus.PENDING.value:
                job = self.store.transition(job_id, JobStatus.QUEUED)
            elif job.status != JobStatus.QUEUED.value:
                raise InvalidTransitionError(job_id, job.status, JobStatus.QUEUED.value)
            created_at = job.created_at or datetime.utcnow()
            heapq.heappush(self._heap, (-(job.priority or 0), created_at, next(self._seq), job_id))
            self._queued.add(job_id)
            self._cond.notify_all()
        logging.info(f"[job_id={job_id}] Queued with priority {job.priority}")
        return True

    def cancel(self, job_id: str, wait: bool = True):
        """
        Cancel a queued or running job. For a running job the subprocess is
        reaped before this returns; with `wait` the call also waits (bounded)
        for the pipeline to clean up its working directory.
        """
        with self._cond:
            if job_id in self._queued:
                # the heap entry is skipped lazily by the dispatcher
                job = self.store.transition(job_id, JobStatus.CANCELLED, expected=(JobStatus.QUEUED,))
                self._queued.discard(job_id)
                logging.info(f"[job_id={job_id}] Cancelled while queued")
                return job
            execution = self._running.get(job_id)

        job = self.store.transition(job_id, JobStatus.CANCELLED)
        if execution is not None:
            execution.token.cancel()
            if wait and not execution.done.wait(self.cancel_wait):
                logging.warning(f"[job_id={job_id}] Pipeline still cleaning up after {self.cancel_wait}s")
        logging.info(f"[job_id={job_id}] Cancelled")
        return job

    def is_active(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._running

    def is_queued(self, job_id: str) -> bool:
        with self._cond:
            return job_id in self._queued

    def stats(self) -> dict:
        with self._cond:
            return {
                "active": len(self._running),
                "queued": len(self._queued),
                "max_concurrent": self.max_concurrent,
                "running_jobs": sorted(self._running),
            }

    # dispatch

    def _next_job_locked(self):
        while not self._stopping:
            while self._heap:
                entry = heapq.heappop(self._heap)
                if entry[-1] in self._queued:
                    self._queued.discard(entry[-1])
                    return entry
            self._cond.wait()
        return None

    def _dispatch_loop(self):
        while True:
            self._slots.acquire()
            with self._cond:
                if self._stopping:
                    self._slots.release()
                    return
                entry = self._next_job_locked()
                if entry is None:
                    self._slots.release()
                    return
                job_id = entry[-1]
                try:
                    self.store.transition(job_id, JobStatus.RUNNING, expected=(JobStatus.QUEUED,))
                except (InvalidTransitionError, JobNotFoundError) as e:
                    logging.info(f"[job_id={job_id}] Skipping dequeued job: {e}")
                    self._slots.release()
                    continue
                except PersistenceError as e:
                    logging.error(f"[job_id={job_id}] Could not start job, requeueing: {e}")
                    self._queued.add(job_id)
                    heapq.heappush(self._heap, entry)
                    self._slots.release()
                    self._cond.wait(DISPATCH_RETRY_SECONDS)
                    continue
                execution = _Execution(job_id)
                self._running[job_id] = execution
                execution.thread = threading.Thread(
                    target=self._run_pipeline, args=(execution,), name=f"scan-{job_id[:8]}", daemon=True
                )
                execution.thread.start()
            logging.info(f"[job_id={job_id}] Started scan job.")

    def _run_pipeline(self, execution: _Execution):
        try:
            self.pipeline(execution.job_id, execution.token)
        except Exception:
            logging.exception(f"[job_id={execution.job_id}] Pipeline raised")
        finally:
            with self._cond:
                self._running.pop(execution.job_id, None)
                self._cond.notify_all()
            execution.done.set()
            self._slots.release()

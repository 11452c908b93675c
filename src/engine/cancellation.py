# src/engine/cancellation.py
import logging
import threading

from engine.errors import JobCancelled


class CancelToken:
    """
    Per-job cancellation handle shared by the scheduler and a running pipeline.

    Hooks registered by the pipeline (e.g. "kill the current subprocess") run
    synchronously inside cancel(), so cancel() returns only after they finish.
    """

    def __init__(self, job_id: str = None):
        self.job_id = job_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._hooks = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            hooks = list(self._hooks)
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logging.error(f"[job_id={self.job_id}] Cancel hook failed: {e}")

    def register(self, hook):
        """Register a kill hook; returns a callable that unregisters it.
        If the token already fired, the hook runs immediately."""
        with self._lock:
            fired = self._event.is_set()
            if not fired:
                self._hooks.append(hook)
        if fired:
            hook()

        def unregister():
            with self._lock:
                if hook in self._hooks:
                    self._hooks.remove(hook)
        return unregister

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise JobCancelled(self.job_id)

    def wait(self, timeout: float = None) -> bool:
        return self._event.wait(timeout)

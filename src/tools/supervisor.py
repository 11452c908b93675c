# src/tools/supervisor.py
"""
Supervised subprocess execution: independent stdout/stderr capture, a hard
wall-clock timeout, and a kill hook that cancellation can fire at any time.
The child runs in its own process group so the whole tree is signalled.
"""
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from engine.config import KILL_GRACE_SECONDS
from engine.errors import JobCancelled, ToolExecutionError, ToolTimeoutError


@dataclass
class ProcessResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float


class SupervisedProcess:
    def __init__(self, args: List[str], timeout: float, cwd: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None, kill_grace: float = KILL_GRACE_SECONDS,
                 name: Optional[str] = None):
        self.args = [str(a) for a in args]
        self.timeout = timeout
        self.cwd = cwd
        self.env = env
        self.kill_grace = kill_grace
        self.name = name or os.path.basename(self.args[0])
        self._proc = None
        self._lock = threading.Lock()

    @property
    def pid(self):
        return self._proc.pid if self._proc else None

    def run(self, cancel_token=None) -> ProcessResult:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        started = time.monotonic()
        try:
            self._proc = subprocess.Popen(
                self.args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolExecutionError(f"Failed to start {self.name}: {e}") from e

        unregister = cancel_token.register(self.terminate) if cancel_token is not None else None
        try:
            try:
                stdout, stderr = self._proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                logging.warning(f"{self.name} (pid={self._proc.pid}) exceeded {self.timeout}s, terminating")
                self.terminate()
                self._drain()
                if cancel_token is not None and cancel_token.cancelled:
                    raise JobCancelled(cancel_token.job_id)
                raise ToolTimeoutError(f"{self.name} timed out after {self.timeout}s", timeout=self.timeout)
        finally:
            if unregister is not None:
                unregister()
            # nothing escapes this method with the child still alive
            self.terminate()

        if cancel_token is not None and cancel_token.cancelled:
            raise JobCancelled(cancel_token.job_id)
        return ProcessResult(
            args=self.args,
            returncode=self._proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
        )

    def terminate(self):
        """SIGTERM the process group, wait `kill_grace`, then SIGKILL. Returns once reaped."""
        with self._lock:
            proc = self._proc
            if proc is None or proc.poll() is not None:
                return
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                return
            try:
                proc.wait(timeout=self.kill_grace)
            except subprocess.TimeoutExpired:
                logging.warning(f"{self.name} (pid={proc.pid}) ignored SIGTERM, killing")
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                proc.wait()

    def _drain(self):
        try:
            self._proc.communicate(timeout=self.kill_grace)
        except (subprocess.TimeoutExpired, ValueError):
            for stream in (self._proc.stdout, self._proc.stderr):
                if stream is not None:
                    stream.close()

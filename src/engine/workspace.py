# src/engine/workspace.py
"""
Per-job working directories under a shared root.

Each pipeline gets `<root>/scan-<job_id>-<token>`; the directory is never
shared and is removed when the pipeline finishes, whatever the outcome.
"""
import logging
import os
import re
import secrets
import shutil
from contextlib import contextmanager
from pathlib import Path

from engine.config import WORKSPACE_ROOT

DIR_PATTERN = re.compile(r"^scan-(?P<job_id>.+)-(?P<token>[0-9a-f]{8})$")


class WorkspaceManager:
    def __init__(self, root=WORKSPACE_ROOT):
        self.root = Path(root)

    def ensure_root(self):
        self.root.mkdir(parents=True, exist_ok=True)

    def create(self, job_id: str) -> Path:
        self.ensure_root()
        path = self.root / f"scan-{job_id}-{secrets.token_hex(4)}"
        path.mkdir()
        return path

    def remove(self, path) -> bool:
        path = Path(path)
        if not path.exists():
            return True
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            logging.warning(f"Failed to cleanup working directory {path}: {e}")
            return False

    @contextmanager
    def allocate(self, job_id: str):
        path = self.create(job_id)
        logging.info(f"[job_id={job_id}] Allocated working directory {path}")
        try:
            yield path
        finally:
            self.remove(path)

    def job_directories(self):
        """Yield (job_id, path) for every job directory under the root."""
        if not self.root.is_dir():
            return
        for entry in os.scandir(self.root):
            if not entry.is_dir():
                continue
            match = DIR_PATTERN.match(entry.name)
            if match:
                yield match.group("job_id"), Path(entry.path)

    def directories_for(self, job_id: str):
        return [path for owner, path in self.job_directories() if owner == job_id]

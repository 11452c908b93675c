# src/engine/source_fetcher.py
"""
SourceFetcher: shallow git checkout of a repository reference into a job's
working directory. Fetch failures are terminal for the job and are classified
so callers can tell auth problems from missing refs and network trouble.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from engine.config import FETCH_TIMEOUT, GIT_BINARY, KILL_GRACE_SECONDS
from engine.errors import FetchError, ToolExecutionError, ToolTimeoutError
from tools.supervisor import SupervisedProcess
from utils.scripts_utils import count_files, detect_languages

AUTH_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied (publickey)",
    "terminal prompts disabled",
    "repository not found",
    "403",
)
MISSING_REF_MARKERS = (
    "remote branch",
    "couldn't find remote ref",
    "not our ref",
    "did not match any",
    "unknown revision",
    "reference is not a tree",
    "does not appear to be a git repository",
    "does not exist",
    "needed a single revision",
)
NETWORK_MARKERS = (
    "could not resolve host",
    "connection timed out",
    "connection refused",
    "unable to access",
    "network is unreachable",
    "operation timed out",
    "early eof",
)

# servers only serve full object names to `git fetch <sha>`
FULL_SHA_LENGTH = 40


@dataclass
class RepoRef:
    url: str
    branch: str = "main"
    commit: Optional[str] = None


@dataclass
class FetchResult:
    path: Path
    resolved_commit: str
    commit_message: str = ""
    file_count: int = 0
    languages: List[str] = field(default_factory=list)

    def to_repository_info(self, clone_url: str) -> dict:
        return {
            "clone_url": clone_url,
            "resolved_commit": self.resolved_commit,
            "total_files": self.file_count,
            "languages": self.languages,
        }


def classify_git_error(stderr: str) -> str:
    text = (stderr or "").lower()
    if any(marker in text for marker in AUTH_MARKERS):
        return FetchError.AUTH
    if any(marker in text for marker in MISSING_REF_MARKERS):
        return FetchError.MISSING_REF
    if any(marker in text for marker in NETWORK_MARKERS):
        return FetchError.NETWORK
    return FetchError.UNKNOWN


def redact_url(url: str) -> str:
    return re.sub(r"://[^/@]+@", "://***@", url)


class SourceFetcher:
    def __init__(self, git_binary: str = GIT_BINARY, timeout: int = FETCH_TIMEOUT,
                 kill_grace: float = KILL_GRACE_SECONDS):
        self.git_binary = git_binary
        self.timeout = timeout
        self.kill_grace = kill_grace

    def _env(self):
        env = os.environ.copy()
        # never block on a credential prompt
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_ASKPASS", "echo")
        return env

    def _git(self, args, cwd=None, cancel_token=None, step="git"):
        process = SupervisedProcess(
            [self.git_binary] + list(args),
            timeout=self.timeout,
            cwd=str(cwd) if cwd else None,
            env=self._env(),
            kill_grace=self.kill_grace,
            name="git",
        )
        try:
            result = process.run(cancel_token)
        except ToolTimeoutError as e:
            raise FetchError(f"{step} timed out after {self.timeout}s", reason=FetchError.NETWORK) from e
        except ToolExecutionError as e:
            raise FetchError(f"{step} could not start: {e}", reason=FetchError.UNKNOWN) from e
        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise FetchError(f"{step} failed: {stderr[:1000]}", reason=classify_git_error(stderr))
        return result.stdout.strip()

    def fetch(self, repo_ref: RepoRef, target_dir, cancel_token=None) -> FetchResult:
        target_dir = Path(target_dir)
        logging.info(f"Cloning {redact_url(repo_ref.url)} branch={repo_ref.branch} commit={repo_ref.commit}")

        # shallow clone for performance
        self._git(
            ["clone", "--depth", "1", "--branch", repo_ref.branch, "--single-branch", repo_ref.url, str(target_dir)],
            cancel_token=cancel_token,
            step="clone",
        )
        if repo_ref.commit:
            commit = repo_ref.commit
            if len(commit) == FULL_SHA_LENGTH:
                self._git(["fetch", "--depth", "1", "origin", commit], cwd=target_dir,
                          cancel_token=cancel_token, step=f"fetch {commit}")
            else:
                # abbreviated sha: pull the branch history and resolve it locally
                self._git(["fetch", "--unshallow", "origin"], cwd=target_dir,
                          cancel_token=cancel_token, step="fetch --unshallow")
                commit = self._git(["rev-parse", "--verify", f"{commit}^{{commit}}"], cwd=target_dir,
                                   cancel_token=cancel_token, step=f"resolve {commit}")
            self._git(["checkout", "--detach", commit], cwd=target_dir,
                      cancel_token=cancel_token, step=f"checkout {commit}")

        resolved = self._git(["rev-parse", "HEAD"], cwd=target_dir, cancel_token=cancel_token, step="rev-parse")
        message = self._git(["log", "-1", "--format=%s"], cwd=target_dir, cancel_token=cancel_token, step="log")
        return FetchResult(
            path=target_dir,
            resolved_commit=resolved,
            commit_message=message,
            file_count=count_files(target_dir),
            languages=detect_languages(target_dir),
        )

import json
import sys
import time
from pathlib import Path

import pytest

from engine.db import init_db, make_engine, make_session_factory
from engine.job_manager import JobManager
from engine.job_store import JobStore
from engine.models import Rule
from engine.notifier import Notifier
from engine.rulesets import RuleSetResolver
from engine.source_fetcher import FetchResult
from engine.workspace import WorkspaceManager
from tools.semgrep_adapter import SemgrepAdapter


def wait_for(predicate, timeout=15.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def finding(check_id="no-eval", path="app.js", line=3, end_line=None, message="Avoid eval", severity=None,
            category=None):
    extra = {"message": message, "lines": "eval(input)", "metadata": {}}
    if severity:
        extra["severity"] = severity
    if category:
        extra["metadata"]["category"] = category
    return {
        "check_id": check_id,
        "path": path,
        "start": {"line": line, "col": 1},
        "end": {"line": end_line or line, "col": 12},
        "extra": extra,
    }


def report(*findings, errors=None, scanned=None):
    return json.dumps({
        "results": list(findings),
        "errors": errors or [],
        "paths": {"scanned": scanned if scanned is not None else ["app.js"]},
    })


class ScriptedSemgrep(SemgrepAdapter):
    """Runs a Python snippet in place of the semgrep binary."""

    def __init__(self, script, **kwargs):
        kwargs.setdefault("kill_grace", 2.0)
        super().__init__(binary=sys.executable, **kwargs)
        self.script = script
        self.commands = []

    @classmethod
    def emitting(cls, stdout="", exit_code=0, stderr="", **kwargs):
        write = "sys.stdout.buffer.write" if isinstance(stdout, bytes) else "sys.stdout.write"
        script = (
            "import sys\n"
            f"{write}({stdout!r})\n"
            f"sys.stderr.write({stderr!r})\n"
            f"sys.exit({exit_code})\n"
        )
        return cls(script, **kwargs)

    @classmethod
    def sleeping(cls, seconds=60, **kwargs):
        return cls(f"import time\ntime.sleep({seconds})\n", **kwargs)

    def build_command(self, config_path, target_path, options):
        self.commands.append((config_path, target_path, options))
        return [sys.executable, "-c", self.script]


class FakeFetcher:
    """Writes a tiny source tree instead of cloning."""

    def __init__(self, files=None, error=None):
        self.files = files or {"app.js": "const x = eval(input);\n", "lib/util.py": "print('hi')\n"}
        self.error = error
        self.fetched = []

    def fetch(self, repo_ref, target_dir, cancel_token=None):
        self.fetched.append(repo_ref)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if self.error is not None:
            raise self.error
        target_dir = Path(target_dir)
        for name, content in self.files.items():
            path = target_dir / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return FetchResult(
            path=target_dir,
            resolved_commit="a" * 40,
            commit_message="Initial commit",
            file_count=len(self.files),
            languages=["javascript", "python"],
        )


class RecordingNotifier(Notifier):
    def __init__(self):
        self.calls = []

    def notify(self, external_ref, summary):
        self.calls.append((external_ref, summary))


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'scans.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory, backoff=0.01)


@pytest.fixture
def workspace(tmp_path):
    return WorkspaceManager(tmp_path / "work")


@pytest.fixture
def resolver(session_factory):
    return RuleSetResolver(session_factory)


@pytest.fixture
def rules(session_factory):
    with session_factory() as db:
        db.add_all([
            Rule(rule_id="no-eval", name="No eval", languages=["javascript"], severity="ERROR",
                 category="security", message="Avoid eval", patterns=[{"pattern": "eval(...)"}],
                 rule_metadata={"cwe": "CWE-95", "confidence": "HIGH"}, fix_suggestion="Use JSON.parse"),
            Rule(rule_id="print-debug", name="Debug print", languages=["python"], severity="INFO",
                 category="style", message="Debug print left in code",
                 patterns=[{"pattern": "print(...)"}, {"pattern-not-inside": "def main(): ..."}]),
            Rule(rule_id="disabled-rule", name="Disabled", languages=["python"], severity="WARNING",
                 category="correctness", message="never used", patterns=[{"pattern": "exec(...)"}],
                 enabled=False),
        ])
        db.commit()
    return ["no-eval", "print-debug", "disabled-rule"]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_manager(session_factory, tmp_path, notifier, rules):
    managers = []

    def build(runner=None, fetcher=None, max_concurrent=2):
        manager = JobManager.from_config(
            session_factory=session_factory,
            workspace_root=str(tmp_path / "work"),
            max_concurrent=max_concurrent,
            runner=runner or ScriptedSemgrep.emitting(report()),
            fetcher=fetcher or FakeFetcher(),
            notifier=notifier,
            rules_path=None,
        )
        managers.append(manager)
        return manager

    yield build
    for manager in managers:
        manager.shutdown(timeout=10)


def make_job(store, **fields):
    fields.setdefault("repo_url", "https://example.com/acme/app.git")
    fields.setdefault("branch", "main")
    fields.setdefault("priority", 5)
    fields.setdefault("ruleset", ["no-eval"])
    fields.setdefault("scan_config", {"timeout_seconds": 300})
    return store.create_job(**fields)


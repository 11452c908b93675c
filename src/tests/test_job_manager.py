from datetime import datetime, timedelta

import pytest

from conftest import make_job, wait_for
from engine.errors import InvalidTransitionError, JobNotFoundError, ValidationError
from engine.models import ScanJob
from engine.states import JobStatus

TRIGGER = {"repo_url": "https://example.com/acme/app.git"}


@pytest.fixture
def manager(make_manager):
    # scheduler not started: submitted jobs stay queued
    return make_manager()


@pytest.mark.parametrize("kwargs", [
    {"trigger": {}},
    {"trigger": {**TRIGGER, "commit_sha": "xyz"}},
    {"trigger": {**TRIGGER, "commit_sha": "abc12"}},
    {"trigger": {**TRIGGER, "source": "carrier-pigeon"}},
    {"trigger": TRIGGER, "priority": 11},
    {"trigger": TRIGGER, "priority": 0},
    {"trigger": TRIGGER, "scan_config": {"timeout_seconds": 5000}},
    {"trigger": TRIGGER, "scan_config": {"exclude_paths": "tests/"}},
    {"trigger": TRIGGER, "rule_ids": ["disabled-rule"]},
    {"trigger": TRIGGER},
    {"project_id": "missing-project", "trigger": TRIGGER, "rule_ids": ["no-eval"]},
])
def test_invalid_requests_create_nothing(manager, kwargs):
    with pytest.raises(ValidationError):
        manager.submit_job(**kwargs)
    assert manager.job_history() == []


def test_submit_queues_job_with_defaults(manager):
    job_id = manager.submit_job(trigger={**TRIGGER, "commit_sha": "ABCDEF1"}, rule_ids=["no-eval"])
    status = manager.get_job_status(job_id)
    assert status["status"] == "queued"
    assert status["priority"] == 5
    assert status["ruleset"] == ["no-eval"]
    assert status["trigger"]["branch"] == "main"
    assert status["trigger"]["source"] == "manual"
    assert status["trigger"]["commit_sha"] == "abcdef1"
    assert status["scan_config"]["timeout_seconds"] == 300
    assert status["scan_config"]["max_file_size_kb"] == 1024
    assert status["is_active"] is True
    assert status["can_retry"] is False
    assert status["results_count"] == 0


def test_project_supplies_repo_rules_and_config(manager, store):
    store.create_project(
        project_id="proj-1", name="Acme", repo_url="https://example.com/acme/api.git", branch="develop",
        languages=["python"], scan_config={"exclude_paths": ["vendor/**"], "rules": ["no-eval"]},
    )
    job_id = manager.submit_job(project_id="proj-1", scan_config={"timeout_seconds": 60})
    status = manager.get_job_status(job_id)
    assert status["project_id"] == "proj-1"
    assert status["trigger"]["repo_url"] == "https://example.com/acme/api.git"
    assert status["trigger"]["branch"] == "develop"
    assert status["ruleset"] == ["no-eval"]
    assert status["scan_config"]["exclude_paths"] == ["vendor/**"]
    assert status["scan_config"]["timeout_seconds"] == 60
    assert "rules" not in status["scan_config"]


def test_project_languages_select_rules(manager, store):
    store.create_project(project_id="proj-py", name="Py", repo_url="https://example.com/py.git",
                         languages=["python"], scan_config={})
    job_id = manager.submit_job(project_id="proj-py")
    assert manager.get_job_status(job_id)["ruleset"] == ["print-debug"]


def test_unknown_job_is_not_found(manager):
    with pytest.raises(JobNotFoundError):
        manager.get_job_status("nope")
    with pytest.raises(JobNotFoundError):
        manager.cancel_job("nope")
    with pytest.raises(JobNotFoundError):
        manager.get_results("nope")


def test_cancel_queued_job(manager):
    job_id = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    status = manager.cancel_job(job_id)
    assert status["status"] == "cancelled"
    assert status["is_active"] is False
    assert manager.scheduler.is_queued(job_id) is False
    with pytest.raises(InvalidTransitionError):
        manager.cancel_job(job_id)


def test_bulk_cancel_reports_each_job(manager):
    a = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    b = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    manager.cancel_job(b)
    outcome = manager.bulk_cancel([a, b, "nope"])
    assert outcome["cancelled"] == [a]
    assert {f["job_id"]: f["kind"] for f in outcome["failed"]} == {b: "invalid_transition", "nope": "not_found"}


def test_rerun_requires_a_recent_finished_job(manager, session_factory):
    job_id = manager.submit_job(trigger={**TRIGGER, "branch": "release"}, rule_ids=["no-eval"], priority=8)
    with pytest.raises(ValidationError):
        manager.rerun_job(job_id)

    manager.cancel_job(job_id)
    new_id = manager.rerun_job(job_id, {"priority": 3})
    rerun = manager.get_job_status(new_id)
    assert rerun["status"] == "queued"
    assert rerun["priority"] == 3
    assert rerun["trigger"]["branch"] == "release"
    assert rerun["trigger"]["event"] == "rerun"
    assert rerun["trigger"]["metadata"]["rerun_of"] == job_id
    assert rerun["ruleset"] == ["no-eval"]

    with session_factory() as db:
        row = db.query(ScanJob).filter(ScanJob.job_id == job_id).one()
        row.created_at = datetime.utcnow() - timedelta(days=8)
        db.commit()
    assert manager.get_job_status(job_id)["can_retry"] is False
    with pytest.raises(ValidationError):
        manager.rerun_job(job_id)


def test_history_filters_and_validates(manager):
    a = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    b = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    manager.cancel_job(a)
    assert [j["job_id"] for j in manager.job_history()] == [b, a]
    assert [j["job_id"] for j in manager.job_history(status="cancelled")] == [a]
    with pytest.raises(ValidationError):
        manager.job_history(status="exploded")


def test_statistics_include_scheduler_load(manager):
    manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    stats = manager.statistics()
    assert stats["total_jobs"] == 1
    assert stats["by_status"]["queued"]["count"] == 1
    assert stats["scheduler"]["queued"] == 1
    assert stats["scheduler"]["max_concurrent"] == 2


def test_triage_validates_status(manager):
    with pytest.raises(ValidationError):
        manager.update_triage("r1", "maybe")
    with pytest.raises(JobNotFoundError):
        manager.update_triage("r1", "fixed")


def test_delete_only_finished_jobs(manager):
    job_id = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    with pytest.raises(ValidationError):
        manager.delete_job(job_id)
    manager.cancel_job(job_id)
    manager.delete_job(job_id)
    with pytest.raises(JobNotFoundError):
        manager.get_job_status(job_id)


def test_purge_old_jobs(manager, session_factory):
    job_id = manager.submit_job(trigger=TRIGGER, rule_ids=["no-eval"])
    manager.cancel_job(job_id)
    assert manager.purge_old_jobs(days=30) == 0
    with session_factory() as db:
        row = db.query(ScanJob).filter(ScanJob.job_id == job_id).one()
        row.created_at = datetime.utcnow() - timedelta(days=45)
        db.commit()
    assert manager.purge_old_jobs(days=30) == 1
    with pytest.raises(ValidationError):
        manager.purge_old_jobs(days=0)


def test_startup_recovers_interrupted_state(make_manager, store, workspace):
    interrupted = make_job(store)
    store.transition(interrupted.job_id, JobStatus.QUEUED)
    store.transition(interrupted.job_id, JobStatus.RUNNING)
    waiting = make_job(store)
    store.transition(waiting.job_id, JobStatus.QUEUED)
    fresh = make_job(store)
    stale_dir = workspace.create(interrupted.job_id)
    orphan_dir = workspace.create("long-gone")

    manager = make_manager()
    manager.startup()

    job = store.load_job(interrupted.job_id)
    assert job.status == "failed"
    assert job.error_kind == "interrupted"
    assert job.error == "Interrupted by restart"
    assert not stale_dir.exists()
    assert not orphan_dir.exists()
    for job_id in (waiting.job_id, fresh.job_id):
        assert wait_for(lambda: store.load_job(job_id).status == "completed")

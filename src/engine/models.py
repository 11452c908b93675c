from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()

SEVERITY_SCORES = {"ERROR": 3, "WARNING": 2, "INFO": 1}
SEVERITY_WEIGHTS = {"ERROR": 30, "WARNING": 20, "INFO": 10}
LEVEL_WEIGHTS = {"HIGH": 1.0, "MEDIUM": 0.7, "LOW": 0.4}


class Project(Base):
    __tablename__ = 'projects'
    project_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    repo_url = Column(String, nullable=False)
    branch = Column(String, default='main')
    languages = Column(JSON, default=list)
    scan_config = Column(JSON, default=dict)  # include/exclude paths, limits, optional rule ids
    total_scans = Column(Integer, default=0)
    last_scan_at = Column(DateTime, nullable=True)
    last_scan_status = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Rule(Base):
    __tablename__ = 'rules'
    rule_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    languages = Column(JSON, default=list)
    severity = Column(String, default='WARNING')
    category = Column(String, default='correctness')
    message = Column(Text, nullable=False)
    patterns = Column(JSON, default=list)
    rule_metadata = Column('metadata', JSON, default=dict)
    fix_suggestion = Column(Text, nullable=True)
    source = Column(String, default='custom')
    enabled = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ScanJob(Base):
    __tablename__ = 'scan_jobs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, unique=True, nullable=False)
    project_id = Column(String, ForeignKey('projects.project_id'), nullable=True, index=True)
    status = Column(String, default='pending', index=True)
    priority = Column(Integer, default=5)

    # trigger metadata
    trigger_source = Column(String, default='manual')
    trigger_event = Column(String, default='manual_trigger')
    repo_url = Column(String, nullable=True)
    branch = Column(String, default='main')
    commit_sha = Column(String, nullable=True)
    commit_message = Column(Text, nullable=True)
    pr_number = Column(Integer, nullable=True)
    pr_title = Column(String, nullable=True)
    pr_author = Column(String, nullable=True)
    trigger_metadata = Column('metadata', JSON, default=dict)

    ruleset = Column(JSON, default=list)  # ordered rule ids
    scan_config = Column(JSON, default=dict)
    repository_info = Column(JSON, nullable=True)
    summary = Column(JSON, nullable=True)
    log = Column(JSON, default=list)
    error = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    elapsed_seconds = Column(Float, default=0.0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version = Column(Integer, nullable=False)

    results = relationship(
        "ScanResult",
        back_populates="job",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index('ix_scan_jobs_status_priority', 'status', 'priority'),)

    @property
    def is_active(self):
        return self.status in ('pending', 'queued', 'running')

    @property
    def pull_request(self):
        if not self.pr_number:
            return None
        return {
            "pr_number": self.pr_number,
            "pr_title": self.pr_title,
            "pr_author": self.pr_author,
            "branch": self.branch,
            "commit_sha": self.commit_sha,
        }


class ScanResult(Base):
    __tablename__ = 'scan_results'
    result_id = Column(String, primary_key=True)
    job_id = Column(String, ForeignKey('scan_jobs.job_id', ondelete='CASCADE'), nullable=False)
    rule_id = Column(String, nullable=False, index=True)
    file_path = Column(String, nullable=False)
    line_start = Column(Integer, nullable=False)
    line_end = Column(Integer, nullable=False)
    column_start = Column(Integer, nullable=True)
    column_end = Column(Integer, nullable=True)
    severity = Column(String, nullable=False)
    category = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    code_snippet = Column(Text, nullable=True)
    fix_suggestion = Column(Text, nullable=True)
    result_metadata = Column('metadata', JSON, default=dict)
    engine_output = Column(JSON, nullable=True)
    fingerprint = Column(String, nullable=False)
    position = Column(Integer, default=0)  # order in the engine report

    # triage
    status = Column(String, default='open')
    triage_reason = Column(String, nullable=True)
    triaged_by = Column(String, nullable=True)
    triaged_at = Column(DateTime, nullable=True)
    triage_notes = Column(Text, nullable=True)
    duplicate_of = Column(String, ForeignKey('scan_results.result_id'), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    job = relationship("ScanJob", back_populates="results")

    __table_args__ = (
        Index('ix_scan_results_job_fingerprint', 'job_id', 'fingerprint'),
        Index('ix_scan_results_job_severity', 'job_id', 'severity'),
        Index('ix_scan_results_job_status', 'job_id', 'status'),
    )

    @property
    def line_range(self):
        if self.line_start == self.line_end:
            return f"line {self.line_start}"
        return f"lines {self.line_start}-{self.line_end}"

    @property
    def severity_score(self):
        return SEVERITY_SCORES.get(self.severity, 0)

    @property
    def risk_score(self):
        metadata = self.result_metadata or {}
        base = SEVERITY_WEIGHTS.get(self.severity, 10)
        confidence = LEVEL_WEIGHTS.get(metadata.get("confidence"), 0.7)
        impact = LEVEL_WEIGHTS.get(metadata.get("impact"), 0.7)
        return round(base * confidence * impact)

    @property
    def is_security_issue(self):
        metadata = self.result_metadata or {}
        return self.category == 'security' or bool(metadata.get("cwe")) or bool(metadata.get("owasp"))

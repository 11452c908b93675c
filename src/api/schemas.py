# src/api/schemas.py
# Pydantic models for scan job requests and responses
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal


class ScanConfig(BaseModel):
    include_paths: Optional[List[str]] = Field(None, description="Glob patterns to include")
    exclude_paths: Optional[List[str]] = Field(None, description="Glob patterns to exclude")
    max_file_size_kb: Optional[int] = Field(None, description="Skip files larger than this (KB)")
    timeout_seconds: Optional[int] = Field(None, description="Per-file engine timeout, at most 1800")


class TriggerInfo(BaseModel):
    source: Literal['manual', 'webhook', 'scheduled', 'api', 'upload'] = Field('manual', description="What started the scan")
    event: Optional[str] = Field(None, description="Trigger event, e.g. push or pull_request")
    repo_url: Optional[str] = Field(None, description="Repository URL; defaults to the project's")
    branch: Optional[str] = Field(None, description="Branch name; defaults to the project's or main")
    commit_sha: Optional[str] = Field(None, description="Commit to scan (7-40 hex characters)")
    commit_message: Optional[str] = None
    pr_number: Optional[int] = None
    pr_title: Optional[str] = None
    pr_author: Optional[str] = None
    languages: Optional[List[str]] = Field(None, description="Select rules by language when no rule ids are given")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ScanJobRequest(BaseModel):
    project_id: Optional[str] = Field(None, description="Project identifier (optional)")
    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    scan_config: Optional[ScanConfig] = None
    priority: Optional[int] = Field(None, description="1 (lowest) to 10 (highest), default 5")
    rule_ids: Optional[List[str]] = Field(None, description="Explicit rule ids, in order")


class RerunRequest(BaseModel):
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    priority: Optional[int] = None
    rule_ids: Optional[List[str]] = None
    scan_config: Optional[ScanConfig] = None
    triggered_by: Optional[str] = None


class BulkCancelRequest(BaseModel):
    job_ids: List[str] = Field(..., description="Jobs to cancel")


class TriageRequest(BaseModel):
    status: Literal['open', 'false_positive', 'fixed', 'ignored', 'wont_fix']
    reason: Optional[str] = None
    triaged_by: Optional[str] = None
    notes: Optional[str] = None


class ScanJobSubmitted(BaseModel):
    success: bool = True
    job_id: str
    status: str

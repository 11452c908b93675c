# src/api/routes.py
from datetime import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from api.schemas import BulkCancelRequest, RerunRequest, ScanJobRequest, ScanJobSubmitted, TriageRequest

router = APIRouter()


def _manager(request: Request):
    return request.app.state.job_manager


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post(
    "/scan/jobs",
    summary="Submit a scan job",
    response_description="Job ID and queue status",
    tags=["Scan Jobs"],
    response_model=ScanJobSubmitted,
    status_code=201,
    responses={
        201: {"description": "Job queued"},
        400: {"description": "Invalid scan request"},
        500: {"description": "Internal server error"}
    },
)
def submit_scan_job(request: Request, body: ScanJobRequest):
    """
    Validate a scan request and queue it. Returns the job ID immediately; the scan
    runs when a concurrency slot frees up.
    """
    manager = _manager(request)
    logging.info(f"Submitting scan job for project={body.project_id} repo={body.trigger.repo_url}")
    job_id = manager.submit_job(
        project_id=body.project_id,
        trigger=body.trigger.model_dump(exclude_none=True),
        scan_config=body.scan_config.model_dump(exclude_none=True) if body.scan_config else None,
        priority=body.priority,
        rule_ids=body.rule_ids,
    )
    status = manager.get_job_status(job_id)["status"]
    return {"success": True, "job_id": job_id, "status": status}


@router.post(
    "/scan/jobs/bulk-cancel",
    summary="Cancel several scan jobs",
    tags=["Scan Jobs"],
    response_model=dict,
)
def bulk_cancel_scan_jobs(request: Request, body: BulkCancelRequest):
    """
    Cancel every listed job that is still active. Jobs that cannot be cancelled are
    reported in `failed` instead of failing the whole request.
    """
    return {"success": True, **_manager(request).bulk_cancel(body.job_ids)}


@router.get(
    "/scan/jobs/{job_id}",
    summary="Get scan job status",
    response_description="Status, timestamps, summary and error classification",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Job status"},
        404: {"description": "Job not found"},
    },
)
def get_scan_job_status(request: Request, job_id: str):
    return {"success": True, "job": _manager(request).get_job_status(job_id)}


@router.post(
    "/scan/jobs/{job_id}/cancel",
    summary="Cancel a queued or running scan job",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Job cancelled"},
        404: {"description": "Job not found"},
        409: {"description": "Job already finished"},
    },
)
def cancel_scan_job(request: Request, job_id: str):
    """
    A queued job is dropped from the queue; a running job has its engine process
    terminated before this returns.
    """
    return {"success": True, "job": _manager(request).cancel_job(job_id)}


@router.post(
    "/scan/jobs/{job_id}/rerun",
    summary="Rerun a finished scan job",
    tags=["Scan Jobs"],
    response_model=ScanJobSubmitted,
    status_code=201,
    responses={
        201: {"description": "Rerun queued"},
        400: {"description": "Scan cannot be rerun (too old or invalid status)"},
        404: {"description": "Job not found"},
    },
)
def rerun_scan_job(request: Request, job_id: str, body: Optional[RerunRequest] = None):
    manager = _manager(request)
    overrides = body.model_dump(exclude_none=True) if body else {}
    new_job_id = manager.rerun_job(job_id, overrides)
    return {"success": True, "job_id": new_job_id, "status": manager.get_job_status(new_job_id)["status"]}


@router.get(
    "/scan/jobs/{job_id}/results",
    summary="List findings for a scan job",
    tags=["Scan Results"],
    response_model=dict,
)
def get_scan_job_results(
    request: Request,
    job_id: str,
    severity: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    include_duplicates: bool = True,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """
    Findings ordered by severity (ERROR first), then line. Duplicates are included
    by default and point at their canonical finding through `duplicate_of`.
    """
    data = _manager(request).get_results(
        job_id, severity=severity, category=category, status=status,
        include_duplicates=include_duplicates, limit=limit, offset=offset,
    )
    return {"success": True, **data}


@router.get(
    "/scan/jobs/{job_id}/logs",
    summary="Get the job's log entries",
    tags=["Scan Jobs"],
    response_model=dict,
)
def get_scan_job_logs(request: Request, job_id: str, level: Optional[str] = None,
                      limit: Optional[int] = Query(None, ge=1)):
    return {"success": True, "job_id": job_id, "logs": _manager(request).get_job_logs(job_id, level=level, limit=limit)}


@router.delete(
    "/scan/jobs/{job_id}",
    summary="Delete a finished scan job and its results",
    tags=["Scan Jobs"],
    response_model=dict,
    responses={
        200: {"description": "Job deleted"},
        400: {"description": "Job is still active"},
        404: {"description": "Job not found"},
    },
)
def delete_scan_job(request: Request, job_id: str):
    _manager(request).delete_job(job_id)
    return {"success": True, "message": f"Job {job_id} and its results deleted."}


@router.get(
    "/scan/history",
    summary="Query scan job history",
    response_description="Scan jobs filtered by project and status, newest first",
    tags=["Scan Jobs"],
    response_model=list,
)
def get_scan_history(request: Request, project_id: Optional[str] = None, status: Optional[str] = None,
                     limit: int = Query(20, ge=1, le=200), offset: int = Query(0, ge=0)):
    """
    Query scan job history by project and/or status.
    """
    return _manager(request).job_history(project_id=project_id, status=status, limit=limit, offset=offset)


@router.get(
    "/scan/stats",
    summary="Scan statistics",
    tags=["Scan Jobs"],
    response_model=dict,
)
def get_scan_stats(request: Request, project_id: Optional[str] = None, date_from: Optional[datetime] = None,
                   date_to: Optional[datetime] = None):
    """
    Job counts, average duration and findings per status, plus the scheduler's
    current load.
    """
    stats = _manager(request).statistics(project_id=project_id, date_from=date_from, date_to=date_to)
    return {"success": True, **stats}


@router.patch(
    "/scan/results/{result_id}/triage",
    summary="Triage a finding",
    tags=["Scan Results"],
    response_model=dict,
    responses={
        200: {"description": "Finding updated"},
        404: {"description": "Finding not found"},
    },
)
def triage_scan_result(request: Request, result_id: str, body: TriageRequest):
    result = _manager(request).update_triage(
        result_id, body.status, reason=body.reason, triaged_by=body.triaged_by, notes=body.notes,
    )
    return {"success": True, "result": result}

# src/engine/result_processor.py
"""
ResultProcessor: semgrep JSON report -> normalized ScanResult rows.

Within one job the first finding with a given fingerprint is canonical; every
later one points at it through `duplicate_of` and is closed as
`ignored`/`duplicate`. The whole result set is written in one transaction, so
a report that fails to parse leaves nothing behind.
"""
import hashlib
import json
import logging
import os
import re
import uuid
from datetime import datetime

from engine.errors import ParseError
from engine.models import ScanResult
from engine.rulesets import match_rule
from utils.scripts_utils import calculate_findings_stats

DEFAULT_SEVERITY = "WARNING"
DEFAULT_CATEGORY = "correctness"
DEFAULT_MESSAGE = "Potential issue found"
DUPLICATE_STATUS = "ignored"
DUPLICATE_REASON = "duplicate"

_WHITESPACE = re.compile(r"\s+")


def normalize_message(message: str) -> str:
    return _WHITESPACE.sub(" ", message or "").strip()


def normalize_path(path: str, root=None) -> str:
    path = str(path or "")
    if root is not None and os.path.isabs(path):
        root = os.path.abspath(str(root))
        if os.path.commonpath([root, os.path.abspath(path)]) == root:
            path = os.path.relpath(path, root)
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def compute_fingerprint(rule_id: str, file_path: str, line_start: int, line_end: int, message: str) -> str:
    data = "|".join([rule_id, file_path, str(line_start), str(line_end), normalize_message(message)])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def parse_report(stdout: str) -> dict:
    """Parse semgrep's --json output. Empty output means the engine found nothing."""
    if not stdout or not stdout.strip():
        return {"results": [], "errors": []}
    try:
        report = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse semgrep output: {e}") from e
    if not isinstance(report, dict):
        raise ParseError("Semgrep report is not a JSON object")
    results = report.get("results", [])
    if not isinstance(results, list):
        raise ParseError("Semgrep report 'results' is not a list")
    for index, finding in enumerate(results):
        if not isinstance(finding, dict) or not finding.get("check_id") or not finding.get("path"):
            raise ParseError(f"Malformed finding at index {index}: missing check_id or path")
    return report


def _as_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class ResultProcessor:
    def __init__(self, store):
        self.store = store

    def normalize(self, job, finding: dict, rules_by_id: dict, repo_root=None, position: int = 0) -> ScanResult:
        extra = finding.get("extra") or {}
        extra_metadata = extra.get("metadata") or {}
        rule = match_rule(finding["check_id"], rules_by_id)
        rule_id = rule.rule_id if rule else finding["check_id"]

        start = finding.get("start") or {}
        end = finding.get("end") or {}
        line_start = max(1, _as_int(start.get("line"), 1))
        line_end = max(line_start, _as_int(end.get("line"), line_start))
        column_start = _as_int(start.get("col"))
        column_end = _as_int(end.get("col"))
        if column_start is not None and column_end is not None and line_start == line_end and column_end < column_start:
            column_end = column_start

        severity = (extra.get("severity") or (rule.severity if rule else None) or DEFAULT_SEVERITY).upper()
        category = extra_metadata.get("category") or (rule.category if rule else None) or DEFAULT_CATEGORY
        message = extra.get("message") or (rule.message if rule else None) or DEFAULT_MESSAGE
        file_path = normalize_path(finding["path"], repo_root)

        metadata = dict(rule.metadata) if rule else {}
        metadata["confidence"] = extra_metadata.get("confidence", metadata.get("confidence", "MEDIUM"))

        return ScanResult(
            result_id=str(uuid.uuid4()),
            job_id=job.job_id,
            rule_id=rule_id,
            file_path=file_path,
            line_start=line_start,
            line_end=line_end,
            column_start=column_start,
            column_end=column_end,
            severity=severity,
            category=category,
            message=message,
            code_snippet=extra.get("lines"),
            fix_suggestion=extra.get("fix") or (rule.fix_suggestion if rule else None),
            result_metadata=metadata,
            engine_output={
                "check_id": finding.get("check_id"),
                "path": finding.get("path"),
                "start": start,
                "end": end,
            },
            fingerprint=compute_fingerprint(rule_id, file_path, line_start, line_end, message),
            position=position,
            status="open",
        )

    def deduplicate(self, results):
        canonical = {}
        now = datetime.utcnow()
        for result in results:
            original = canonical.get(result.fingerprint)
            if original is None:
                canonical[result.fingerprint] = result
                continue
            result.duplicate_of = original.result_id
            result.status = DUPLICATE_STATUS
            result.triage_reason = DUPLICATE_REASON
            result.triaged_by = "system"
            result.triaged_at = now
            result.triage_notes = f"Duplicate of finding {original.result_id}"
        return results

    def process(self, job, stdout: str, rules, repo_root=None, cancel_token=None) -> dict:
        """Parse, normalize, deduplicate and persist; returns the job summary."""
        report = parse_report(stdout)
        rules_by_id = {rule.rule_id: rule for rule in rules}

        results = [
            self.normalize(job, finding, rules_by_id, repo_root, position)
            for position, finding in enumerate(report.get("results", []))
        ]
        self.deduplicate(results)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        for error in report.get("errors") or []:
            message = error.get("message") if isinstance(error, dict) else str(error)
            self.store.append_log(job.job_id, "warn", f"Engine reported: {str(message)[:500]}",
                                  {"engine_error": error if isinstance(error, dict) else None})

        self.store.save_results(job.job_id, results)
        scanned = (report.get("paths") or {}).get("scanned") or []
        summary = calculate_findings_stats(results, files_scanned=len(scanned))
        self.store.persist_summary(job.job_id, summary)
        logging.info(
            f"[job_id={job.job_id}] Persisted {len(results)} results "
            f"({summary['total_findings']} canonical, {summary['duplicate_findings']} duplicates)"
        )
        return summary

import logging

from .base import AnalysisToolAdapter, EngineRun, ScanOptions
from .supervisor import SupervisedProcess
from engine.config import KILL_GRACE_SECONDS, SEMGREP_BINARY, TIMEOUT_GRACE_BUFFER
from engine.errors import ToolExecutionError, ToolTimeoutError
from engine.scan_engine import build_scan_command, build_version_command

# semgrep exit codes: 0 = no findings, 1 = findings found, anything else = error
SUCCESS_EXIT_CODES = (0, 1)


class SemgrepAdapter(AnalysisToolAdapter):
    def __init__(self, binary: str = SEMGREP_BINARY, grace_buffer: int = TIMEOUT_GRACE_BUFFER,
                 kill_grace: float = KILL_GRACE_SECONDS):
        self.binary = binary
        self.grace_buffer = grace_buffer
        self.kill_grace = kill_grace

    def build_command(self, config_path, target_path, options: ScanOptions) -> list:
        return build_scan_command(config_path, target_path, options, binary=self.binary)

    def run_scan(self, config_path, target_path, options: ScanOptions, cancel_token=None) -> EngineRun:
        cmd = self.build_command(config_path, target_path, options)
        process = SupervisedProcess(
            cmd,
            timeout=options.timeout_seconds + self.grace_buffer,
            cwd=str(target_path),
            kill_grace=self.kill_grace,
            name="semgrep",
        )
        result = process.run(cancel_token)
        logging.info(f"semgrep exited with code {result.returncode} after {result.duration:.1f}s")
        if result.returncode not in SUCCESS_EXIT_CODES:
            raise ToolExecutionError(
                f"Semgrep failed with exit code {result.returncode}: {result.stderr.strip()[:2000]}",
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return EngineRun(
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
        )

    def check_installation(self) -> dict:
        try:
            result = SupervisedProcess(build_version_command(self.binary), timeout=30, name="semgrep").run()
        except (ToolExecutionError, ToolTimeoutError) as e:
            return {"installed": False, "error": str(e)}
        if result.returncode != 0:
            return {"installed": False, "error": result.stderr.strip()}
        return {"installed": True, "version": result.stdout.strip()}

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List


@dataclass
class ScanOptions:
    include_paths: List[str] = field(default_factory=list)
    exclude_paths: List[str] = field(default_factory=list)
    max_file_size_kb: int = 1024
    timeout_seconds: int = 300

    @classmethod
    def from_config(cls, scan_config: dict):
        scan_config = scan_config or {}
        options = cls()
        for key in ("include_paths", "exclude_paths", "max_file_size_kb", "timeout_seconds"):
            if scan_config.get(key) is not None:
                setattr(options, key, scan_config[key])
        return options


@dataclass
class EngineRun:
    exit_code: int
    stdout: str
    stderr: str
    duration: float


class AnalysisToolAdapter(ABC):
    @abstractmethod
    def run_scan(self, config_path: str, target_path: str, options: ScanOptions, cancel_token=None) -> EngineRun:
        pass

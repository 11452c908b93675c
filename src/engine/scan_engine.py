# src/engine/scan_engine.py
# Command-line construction for the semgrep analysis engine
from engine.config import SEMGREP_BINARY, USE_DEFAULT_EXCLUDES
from tools.base import ScanOptions

DEFAULT_EXCLUDE_PATTERNS = [
    '**/node_modules/**',
    '**/dist/**',
    '**/build/**',
    '**/coverage/**',
    '**/.git/**',
    '**/*.min.js',
    '**/*.bundle.js',
    '**/*.map',
    '**/package-lock.json',
    '**/yarn.lock',
]

# rules that time out this many times on a file are skipped for that file
TIMEOUT_THRESHOLD = 3


def build_scan_command(config_path, target_path, options: ScanOptions, binary: str = SEMGREP_BINARY,
                       default_excludes: bool = USE_DEFAULT_EXCLUDES) -> list:
    cmd = [
        binary,
        "--config", str(config_path),
        "--json",
        "--no-git-ignore",
        "--timeout", str(options.timeout_seconds),
        "--max-target-bytes", str(options.max_file_size_kb * 1024),
    ]
    excludes = list(options.exclude_paths or [])
    if default_excludes:
        excludes += [p for p in DEFAULT_EXCLUDE_PATTERNS if p not in excludes]
    for pattern in excludes:
        cmd += ["--exclude", pattern]
    for pattern in options.include_paths or []:
        cmd += ["--include", pattern]
    cmd += ["--timeout-threshold", str(TIMEOUT_THRESHOLD)]
    cmd.append(str(target_path))
    return cmd


def build_version_command(binary: str = SEMGREP_BINARY) -> list:
    return [binary, "--version"]

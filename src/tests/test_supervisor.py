import signal
import sys
import threading
import time

import pytest

from conftest import ScriptedSemgrep, report
from engine.cancellation import CancelToken
from engine.errors import JobCancelled, ToolExecutionError, ToolTimeoutError
from engine.scan_engine import build_scan_command
from tools.base import ScanOptions
from tools.supervisor import SupervisedProcess


def python(code):
    return [sys.executable, "-c", code]


def test_captures_stdout_and_stderr_separately():
    result = SupervisedProcess(
        python("import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"), timeout=10
    ).run()
    assert result.returncode == 3
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


def test_undecodable_output_is_replaced_not_raised():
    result = SupervisedProcess(
        python("import sys; sys.stdout.buffer.write(b'ok \\xff'); sys.stderr.buffer.write(b'\\xfe')"), timeout=10
    ).run()
    assert result.stdout == "ok \ufffd"
    assert result.stderr == "\ufffd"


def test_missing_binary_is_a_tool_error():
    with pytest.raises(ToolExecutionError):
        SupervisedProcess(["/nonexistent/semgrep"], timeout=5).run()


def test_timeout_kills_and_reaps():
    process = SupervisedProcess(python("import time; time.sleep(30)"), timeout=0.5, kill_grace=1)
    started = time.monotonic()
    with pytest.raises(ToolTimeoutError) as exc:
        process.run()
    assert time.monotonic() - started < 10
    assert exc.value.timeout == 0.5
    assert process._proc.returncode is not None


def test_sigterm_is_escalated_to_sigkill():
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    process = SupervisedProcess(python(code), timeout=1, kill_grace=0.5)
    with pytest.raises(ToolTimeoutError):
        process.run()
    assert process._proc.returncode == -signal.SIGKILL


def test_cancel_terminates_running_process():
    token = CancelToken("job-1")
    process = SupervisedProcess(python("import time; time.sleep(30)"), timeout=60, kill_grace=1)
    threading.Timer(0.5, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(JobCancelled):
        process.run(token)
    assert time.monotonic() - started < 10
    assert process._proc.returncode is not None


def test_already_cancelled_token_never_spawns():
    token = CancelToken("job-1")
    token.cancel()
    process = SupervisedProcess(python("print('hi')"), timeout=5)
    with pytest.raises(JobCancelled):
        process.run(token)
    assert process.pid is None


@pytest.mark.parametrize("exit_code", [0, 1])
def test_semgrep_success_exit_codes(tmp_path, exit_code):
    runner = ScriptedSemgrep.emitting(report(), exit_code=exit_code)
    run = runner.run_scan(tmp_path / "rules.yml", tmp_path, ScanOptions())
    assert run.exit_code == exit_code
    assert '"results"' in run.stdout


def test_semgrep_error_exit_code_carries_stderr(tmp_path):
    runner = ScriptedSemgrep.emitting("", exit_code=2, stderr="invalid rule config")
    with pytest.raises(ToolExecutionError) as exc:
        runner.run_scan(tmp_path / "rules.yml", tmp_path, ScanOptions())
    assert exc.value.exit_code == 2
    assert "invalid rule config" in exc.value.stderr


def test_semgrep_hard_timeout_adds_grace_buffer(tmp_path):
    runner = ScriptedSemgrep.sleeping(30, grace_buffer=1, kill_grace=1)
    with pytest.raises(ToolTimeoutError) as exc:
        runner.run_scan(tmp_path / "rules.yml", tmp_path, ScanOptions(timeout_seconds=1))
    assert exc.value.timeout == 2


def test_build_scan_command():
    options = ScanOptions(include_paths=["src/**"], exclude_paths=["tests/**"], max_file_size_kb=512,
                          timeout_seconds=120)
    cmd = build_scan_command("/tmp/rules.yml", "/tmp/repo", options, binary="semgrep", default_excludes=False)
    assert cmd[:3] == ["semgrep", "--config", "/tmp/rules.yml"]
    assert "--json" in cmd and "--no-git-ignore" in cmd
    assert cmd[cmd.index("--timeout") + 1] == "120"
    assert cmd[cmd.index("--max-target-bytes") + 1] == str(512 * 1024)
    assert cmd[cmd.index("--exclude") + 1] == "tests/**"
    assert cmd[cmd.index("--include") + 1] == "src/**"
    assert cmd[cmd.index("--timeout-threshold") + 1] == "3"
    assert cmd[-1] == "/tmp/repo"


def test_build_scan_command_appends_default_excludes():
    cmd = build_scan_command("/tmp/rules.yml", "/tmp/repo", ScanOptions(), binary="semgrep", default_excludes=True)
    excluded = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "--exclude"]
    assert "node_modules" in " ".join(excluded)

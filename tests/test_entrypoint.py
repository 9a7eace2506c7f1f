from __future__ import annotations

import io
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from podutils.config import EntrypointOptions
from podutils.context import RunContext
from podutils.entrypoint import EntrypointSupervisor
from podutils.marker import INTERNAL_ERROR_EXIT_CODE, TIMEOUT_EXIT_CODE, Marker, read_marker

pytestmark = [
    allure.epic("Pod Utilities"),
    allure.feature("Entrypoint Supervisor"),
]


def _supervisor(
    tmp_path: Path,
    args: list[str],
    **overrides,
) -> tuple[EntrypointSupervisor, io.BytesIO, io.BytesIO]:
    options = EntrypointOptions(
        args=args,
        process_log=str(tmp_path / "process-log.txt"),
        marker_file=str(tmp_path / "marker-file.txt"),
    )
    ctx = overrides.pop("ctx", None)
    for key, value in overrides.items():
        setattr(options, key, value)
    stdout = io.BytesIO()
    stderr = io.BytesIO()
    supervisor = EntrypointSupervisor(options, ctx=ctx, stdout=stdout, stderr=stderr)
    return supervisor, stdout, stderr


def test_successful_process_writes_zero_marker(tmp_path: Path, python_command) -> None:
    supervisor, _, _ = _supervisor(tmp_path, python_command("pass"))

    marker = supervisor.run()

    assert marker == Marker(return_code=0)
    assert marker.exit_code == 0
    assert read_marker(tmp_path / "marker-file.txt") == Marker(return_code=0)


def test_nonzero_exit_code_is_mirrored(tmp_path: Path, python_command) -> None:
    supervisor, _, _ = _supervisor(tmp_path, python_command("import sys; sys.exit(3)"))

    marker = supervisor.run()

    assert marker.return_code == 3
    assert marker.exit_code == 3
    assert read_marker(tmp_path / "marker-file.txt").return_code == 3


def test_output_is_logged_and_forwarded(tmp_path: Path, python_command) -> None:
    code = (
        "import sys\n"
        "sys.stdout.write('hello stdout\\n'); sys.stdout.flush()\n"
        "sys.stderr.write('hello stderr\\n'); sys.stderr.flush()\n"
    )
    supervisor, stdout, stderr = _supervisor(tmp_path, python_command(code))

    supervisor.run()

    log = (tmp_path / "process-log.txt").read_bytes()
    assert b"hello stdout\n" in log
    assert b"hello stderr\n" in log
    assert stdout.getvalue() == b"hello stdout\n"
    assert stderr.getvalue() == b"hello stderr\n"


def test_process_log_is_truncated(tmp_path: Path, python_command) -> None:
    (tmp_path / "process-log.txt").write_text("stale output from a previous run\n")
    supervisor, _, _ = _supervisor(tmp_path, python_command("print('fresh')"))

    supervisor.run()

    log = (tmp_path / "process-log.txt").read_text()
    assert "stale" not in log
    assert "fresh" in log


def test_missing_process_log_is_not_required(tmp_path: Path, python_command) -> None:
    supervisor, stdout, _ = _supervisor(
        tmp_path,
        python_command("print('only forwarded')"),
        process_log="",
    )

    marker = supervisor.run()

    assert marker.return_code == 0
    assert b"only forwarded" in stdout.getvalue()
    assert not (tmp_path / "process-log.txt").exists()


def test_timeout_terminates_process_and_marks_timed_out(tmp_path: Path, python_command) -> None:
    supervisor, _, _ = _supervisor(
        tmp_path,
        python_command("import time; time.sleep(60)"),
        timeout=0.3,
        grace_period=1.0,
    )

    started = time.monotonic()
    marker = supervisor.run()
    elapsed = time.monotonic() - started

    assert elapsed < 10
    assert marker.timed_out is True
    assert marker.return_code == TIMEOUT_EXIT_CODE
    assert marker.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in marker.error
    assert read_marker(tmp_path / "marker-file.txt").timed_out is True


def test_timeout_kills_process_ignoring_sigterm(tmp_path: Path, python_command) -> None:
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    supervisor, _, _ = _supervisor(
        tmp_path,
        python_command(code),
        timeout=0.5,
        grace_period=0.3,
    )

    started = time.monotonic()
    marker = supervisor.run()

    assert time.monotonic() - started < 10
    assert marker.timed_out is True
    assert marker.return_code == TIMEOUT_EXIT_CODE


def test_launch_failure_writes_marker_without_return_code(tmp_path: Path) -> None:
    supervisor, _, _ = _supervisor(tmp_path, [str(tmp_path / "does-not-exist")])

    marker = supervisor.run()

    assert marker.return_code is None
    assert marker.exit_code == INTERNAL_ERROR_EXIT_CODE
    assert "could not start process" in marker.error
    on_disk = read_marker(tmp_path / "marker-file.txt")
    assert on_disk.return_code is None
    assert on_disk.error == marker.error
    assert "could not start process" in (tmp_path / "process-log.txt").read_text()


def test_cancellation_aborts_process_and_still_writes_marker(
    tmp_path: Path,
    python_command,
) -> None:
    ctx = RunContext()
    supervisor, _, _ = _supervisor(
        tmp_path,
        python_command("import time; time.sleep(60)"),
        grace_period=1.0,
        ctx=ctx,
    )
    timer = threading.Timer(0.3, ctx.cancel, kwargs={"reason": "SIGTERM"})
    timer.start()
    try:
        marker = supervisor.run()
    finally:
        timer.cancel()

    assert marker.timed_out is False
    assert marker.return_code is not None
    assert marker.return_code != 0
    assert marker.error == "process aborted: SIGTERM"
    assert read_marker(tmp_path / "marker-file.txt").error == "process aborted: SIGTERM"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
def test_process_killed_by_signal_reports_shell_style_code(
    tmp_path: Path,
    python_command,
) -> None:
    supervisor, _, _ = _supervisor(
        tmp_path,
        python_command("import os, signal; os.kill(os.getpid(), signal.SIGKILL)"),
    )

    marker = supervisor.run()

    assert marker.return_code == 128 + 9


def test_broken_forward_stream_does_not_break_the_log(tmp_path: Path, python_command) -> None:
    options = EntrypointOptions(
        args=python_command("print('still logged')"),
        process_log=str(tmp_path / "process-log.txt"),
        marker_file=str(tmp_path / "marker-file.txt"),
    )
    closed = io.BytesIO()
    closed.close()

    marker = EntrypointSupervisor(options, stdout=closed, stderr=io.BytesIO()).run()

    assert marker.return_code == 0
    assert "still logged" in (tmp_path / "process-log.txt").read_text()
